"""
Friendship state machine.

One edge per unordered pair of users, guarded by the ``uix_friendship_pair``
constraint. Transitions are conditional UPDATEs so a lost race surfaces as an
error instead of a silent no-op.

    none -> pending -> accepted | rejected
    accepted -> (row deleted)
    any -> blocked
"""
import logging
from datetime import timedelta
from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.exc import IntegrityError

from . import core
from .cache import get_cached_friend_ids, cache_friend_ids, invalidate_friends_cache
from .errors import Conflict, Forbidden, NotFound, SelfFriendRequest, ValidationFailed
from .models import AsyncSessionLocal, utcnow, as_utc
from .models.activities import Activity
from .models.friendships import Friendship, PENDING, ACCEPTED, REJECTED, BLOCKED
from .models.users import User

logger = logging.getLogger(__name__)


def _pair(user_a: int, user_b: int):
    return tuple(sorted((user_a, user_b)))


def _pair_clause(user_a: int, user_b: int):
    low, high = _pair(user_a, user_b)
    return and_(Friendship.user_low_id == low, Friendship.user_high_id == high)


def _involving(user_id: int):
    return or_(Friendship.requester_id == user_id, Friendship.addressee_id == user_id)


def _raise_for_existing(edge: Friendship):
    if edge.status == ACCEPTED:
        raise Conflict('Already friends', code='ALREADY_FRIENDS')
    if edge.status == PENDING:
        raise Conflict('Friend request already pending', code='REQUEST_PENDING')
    if edge.status == BLOCKED:
        raise Conflict('Cannot send friend request to this user', code='USER_BLOCKED')


async def send_friend_request(requester_id: int, addressee_id: int) -> Friendship:
    if requester_id == addressee_id:
        raise SelfFriendRequest()
    low, high = _pair(requester_id, addressee_id)
    async with AsyncSessionLocal() as session:
        addressee = await session.get(User, addressee_id)
        if not addressee or not addressee.is_active:
            raise NotFound('User not found')

        q = await session.execute(select(Friendship).where(_pair_clause(requester_id, addressee_id)))
        edge = q.scalars().first()
        now = utcnow()
        if edge:
            _raise_for_existing(edge)
            # rejected: may be reopened once the cooldown has passed
            rejected_at = as_utc(edge.responded_at or edge.updated_at)
            if now - rejected_at < timedelta(hours=core.FRIEND_REQUEST_COOLDOWN_HOURS):
                raise Conflict('Friend request was recently rejected', code='REQUEST_COOLDOWN')
            res = await session.execute(
                update(Friendship)
                .where(Friendship.id == edge.id, Friendship.status == REJECTED)
                .values(requester_id=requester_id, addressee_id=addressee_id, status=PENDING,
                        requested_at=now, responded_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                await session.rollback()
                raise Conflict('Friend request already exists', code='REQUEST_PENDING')
            await session.commit()
            await session.refresh(edge)
            logger.info({'msg': 'friend_request_reopened', 'id': edge.id, 'from': requester_id, 'to': addressee_id})
            return edge

        fr = Friendship(requester_id=requester_id, addressee_id=addressee_id, user_low_id=low,
                        user_high_id=high, status=PENDING, requested_at=now)
        session.add(fr)
        try:
            await session.commit()
        except IntegrityError:
            # the other side of the pair won the insert
            await session.rollback()
            raise Conflict('Friend request already exists', code='REQUEST_PENDING')
        logger.info({'msg': 'friend_request_sent', 'id': fr.id, 'from': requester_id, 'to': addressee_id})
        return fr


async def _diagnose(session, friendship_id: int, user_id: int, role: str):
    fr = await session.get(Friendship, friendship_id)
    if not fr:
        raise NotFound('Friend request not found')
    if getattr(fr, role) != user_id:
        raise Forbidden('Not allowed to modify this friend request')
    raise Conflict('Friend request already responded to', code='ALREADY_RESPONDED')


async def _respond(friendship_id: int, addressee_id: int, status: str) -> Friendship:
    async with AsyncSessionLocal() as session:
        now = utcnow()
        res = await session.execute(
            update(Friendship)
            .where(Friendship.id == friendship_id, Friendship.addressee_id == addressee_id,
                   Friendship.status == PENDING)
            .values(status=status, responded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            await session.rollback()
            await _diagnose(session, friendship_id, addressee_id, 'addressee_id')
        fr = await session.get(Friendship, friendship_id)
        if status == ACCEPTED:
            requester = await session.get(User, fr.requester_id)
            addressee = await session.get(User, fr.addressee_id)
            session.add_all([
                Activity(user_id=requester.id, activity_type='friend_added',
                         title=f'Became friends with {addressee.username}'),
                Activity(user_id=addressee.id, activity_type='friend_added',
                         title=f'Became friends with {requester.username}'),
            ])
        await session.commit()
        await session.refresh(fr)
    await invalidate_friends_cache(fr.requester_id, fr.addressee_id)
    logger.info({'msg': 'friend_request_' + status, 'id': fr.id})
    return fr


async def accept_friend_request(friendship_id: int, addressee_id: int) -> Friendship:
    return await _respond(friendship_id, addressee_id, ACCEPTED)


async def reject_friend_request(friendship_id: int, addressee_id: int) -> Friendship:
    return await _respond(friendship_id, addressee_id, REJECTED)


async def cancel_friend_request(friendship_id: int, requester_id: int):
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            delete(Friendship)
            .where(Friendship.id == friendship_id, Friendship.requester_id == requester_id,
                   Friendship.status == PENDING)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            await session.rollback()
            await _diagnose(session, friendship_id, requester_id, 'requester_id')
        await session.commit()


async def remove_friend(user_id: int, friend_id: int):
    """Delete an accepted edge. Pending or rejected edges are left alone."""
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            delete(Friendship)
            .where(_pair_clause(user_id, friend_id), Friendship.status == ACCEPTED)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            await session.rollback()
            raise NotFound('Friendship not found')
        await session.commit()
    await invalidate_friends_cache(user_id, friend_id)


async def block_user(user_id: int, other_id: int) -> Friendship:
    if user_id == other_id:
        raise ValidationFailed('Cannot block yourself')
    low, high = _pair(user_id, other_id)
    async with AsyncSessionLocal() as session:
        if not await session.get(User, other_id):
            raise NotFound('User not found')
        for _ in range(2):
            q = await session.execute(select(Friendship).where(_pair_clause(user_id, other_id)))
            edge = q.scalars().first()
            now = utcnow()
            if edge:
                if edge.status != BLOCKED:
                    edge.requester_id = user_id
                    edge.addressee_id = other_id
                    edge.status = BLOCKED
                    edge.responded_at = now
                    await session.commit()
                break
            edge = Friendship(requester_id=user_id, addressee_id=other_id, user_low_id=low,
                              user_high_id=high, status=BLOCKED, requested_at=now, responded_at=now)
            session.add(edge)
            try:
                await session.commit()
                break
            except IntegrityError:
                await session.rollback()
    await invalidate_friends_cache(user_id, other_id)
    logger.info({'msg': 'user_blocked', 'by': user_id, 'user': other_id})
    return edge


async def get_friendship_between(user_a: int, user_b: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Friendship).where(_pair_clause(user_a, user_b)))
        return q.scalars().first()


async def are_friends(user_a: int, user_b: int) -> bool:
    if user_a == user_b:
        return False
    edge = await get_friendship_between(user_a, user_b)
    return edge is not None and edge.status == ACCEPTED


async def list_friend_ids(user_id: int):
    cached = await get_cached_friend_ids(user_id)
    if cached is not None:
        return cached
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Friendship).where(_involving(user_id), Friendship.status == ACCEPTED)
        )
        ids = sorted(f.other_user(user_id) for f in q.scalars().all())
    await cache_friend_ids(user_id, ids)
    return ids


async def get_user_friends(user_id: int):
    """Accepted friends as ``{friendship_id, friend_id, since}`` whichever side asked."""
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Friendship)
            .where(_involving(user_id), Friendship.status == ACCEPTED)
            .order_by(Friendship.responded_at.desc(), Friendship.id.desc())
        )
        return [
            {'friendship_id': f.id, 'friend_id': f.other_user(user_id), 'since': f.responded_at or f.created_at}
            for f in q.scalars().all()
        ]


async def get_pending_friend_requests(user_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Friendship)
            .where(Friendship.addressee_id == user_id, Friendship.status == PENDING)
            .order_by(Friendship.requested_at.desc(), Friendship.id.desc())
        )
        return q.scalars().all()


async def get_sent_friend_requests(user_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Friendship)
            .where(Friendship.requester_id == user_id, Friendship.status == PENDING)
            .order_by(Friendship.requested_at.desc(), Friendship.id.desc())
        )
        return q.scalars().all()


def friendship_status(edge, viewer_id: int) -> str:
    """How ``viewer_id`` sees an edge: none, friends, request_sent, request_received, rejected or blocked."""
    if edge is None:
        return 'none'
    if edge.status == ACCEPTED:
        return 'friends'
    if edge.status == PENDING:
        return 'request_sent' if edge.requester_id == viewer_id else 'request_received'
    return edge.status
