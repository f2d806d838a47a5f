import logging
from datetime import timedelta
from sqlalchemy import select, or_, and_
from sqlalchemy.exc import IntegrityError

from .models import AsyncSessionLocal, utcnow
from .models.users import User
from .models.session_tokens import SessionToken
from .models.friendships import Friendship
from .models.activities import Activity
from .auth import (
    create_access_token,
    generate_refresh_token,
    hash_token,
    hash_password,
    verify_password,
    REFRESH_TOKEN_TTL_DAYS,
)
from .cache import get_cached_leaderboard, cache_leaderboard, invalidate_leaderboard
from .errors import Conflict, NotFound, ValidationFailed
from .friends import list_friend_ids, friendship_status
from .sanitize import sanitize_email, sanitize_username, sanitize_search_query, sanitize_url, strip_html

logger = logging.getLogger(__name__)

STAT_FIELDS = ('total_solved', 'easy_solved', 'medium_solved', 'hard_solved',
               'contest_rating', 'current_streak', 'longest_streak')
LEADERBOARD_DEFAULT_LIMIT = 100

# accounts
async def create_user(payload):
    username = sanitize_username(payload.username)
    if username != payload.username:
        raise ValidationFailed(details=[{'field': 'username', 'message': 'Username can only contain letters, numbers, and underscores'}])
    email = sanitize_email(payload.email)
    name = strip_html(payload.name).strip()
    if not name:
        raise ValidationFailed(details=[{'field': 'name', 'message': 'Name is required'}])
    leetcode_username = sanitize_username(payload.leetcode_username) if payload.leetcode_username else None

    async with AsyncSessionLocal() as session:
        q = await session.execute(select(User).where(or_(User.username == username, User.email == email)))
        if q.scalars().first():
            raise Conflict('Username or email already taken', code='USER_EXISTS')
        user = User(
            username=username,
            email=email,
            name=name,
            leetcode_username=leetcode_username or None,
            hashed_password=hash_password(payload.password),
        )
        session.add(user)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise Conflict('Username or email already taken', code='USER_EXISTS')
        await session.refresh(user)
        logger.info({'msg': 'user_registered', 'user_id': user.id})
        return user

def _issue(user: User, session_id: int, refresh: str | None = None) -> dict:
    access = create_access_token({'id': user.id, 'username': user.username, 'sid': session_id})
    tokens = {'access_token': access, 'token_type': 'bearer'}
    if refresh:
        tokens['refresh_token'] = refresh
    return tokens

async def authenticate_user(identifier: str, password: str, device_id: str | None = None, user_agent: str | None = None, ip: str | None = None):
    """Username or email plus password. Returns tokens and opens a session row, or None."""
    ident = identifier.strip()
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(User).where(or_(User.username == ident, User.email == sanitize_email(ident))))
        user = q.scalars().first()
        if not user or not user.is_active or not verify_password(password, user.hashed_password):
            return None
        refresh = generate_refresh_token()
        now = utcnow()
        st = SessionToken(
            user_id=user.id,
            device_id=device_id,
            token_hash=hash_token(refresh),
            user_agent=user_agent[:255] if user_agent else None,
            ip=ip,
            expires_at=now + timedelta(days=REFRESH_TOKEN_TTL_DAYS),
        )
        session.add(st)
        user.last_login_at = now
        await session.commit()
        logger.info({'msg': 'user_logged_in', 'user_id': user.id, 'sid': st.id})
        return _issue(user, st.id, refresh)

async def refresh_access_token(refresh_token: str):
    async with AsyncSessionLocal() as session:
        token_hash = hash_token(refresh_token)
        q = await session.execute(select(SessionToken).where(SessionToken.token_hash == token_hash, SessionToken.revoked_at.is_(None), SessionToken.expires_at > utcnow()))
        st = q.scalars().first()
        if not st:
            return None
        user = await session.get(User, st.user_id)
        if not user or not user.is_active:
            return None
        return _issue(user, st.id)

async def revoke_refresh_token(refresh_token: str, user_id: int | None = None):
    async with AsyncSessionLocal() as session:
        token_hash = hash_token(refresh_token)
        q = await session.execute(select(SessionToken).where(SessionToken.token_hash == token_hash, SessionToken.revoked_at.is_(None)))
        st = q.scalars().first()
        if not st or (user_id is not None and st.user_id != user_id):
            return False
        st.revoked_at = utcnow()
        await session.commit()
        return True

async def revoke_session(session_id: int):
    async with AsyncSessionLocal() as session:
        st = await session.get(SessionToken, session_id)
        if not st or st.revoked_at is not None:
            return False
        st.revoked_at = utcnow()
        await session.commit()
        return True

# users
async def get_user_by_id(user_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
        return q.scalars().first()

async def get_users_by_ids(user_ids):
    ids = set(user_ids)
    if not ids:
        return {}
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(User).where(User.id.in_(ids)))
        return {u.id: u for u in q.scalars().all()}

async def update_profile(user_id: int, changes: dict):
    async with AsyncSessionLocal() as session:
        user = await session.get(User, user_id)
        if not user:
            raise NotFound('User not found')
        for field in ('name', 'bio', 'location'):
            if field in changes and changes[field] is not None:
                value = strip_html(changes[field]).strip()
                if field == 'name' and not value:
                    raise ValidationFailed(details=[{'field': 'name', 'message': 'Name is required'}])
                setattr(user, field, value or None)
        if changes.get('avatar_url') is not None:
            url = sanitize_url(changes['avatar_url'])
            if not url:
                raise ValidationFailed(details=[{'field': 'avatar_url', 'message': 'Invalid URL'}])
            user.avatar_url = url
        if changes.get('leetcode_username') is not None:
            user.leetcode_username = sanitize_username(changes['leetcode_username']) or None
        await session.commit()
        await session.refresh(user)
        return user

async def update_stats(user_id: int, stats: dict):
    """Write synced practice stats; a growing solved count lands in the activity feed."""
    async with AsyncSessionLocal() as session:
        user = await session.get(User, user_id)
        if not user:
            raise NotFound('User not found')
        previous = user.total_solved or 0
        for field in STAT_FIELDS:
            if stats.get(field) is not None:
                setattr(user, field, stats[field])
        user.stats_synced_at = utcnow()
        gained = (user.total_solved or 0) - previous
        if gained > 0:
            plural = 'problem' if gained == 1 else 'problems'
            session.add(Activity(
                user_id=user.id,
                activity_type='problems_solved',
                title=f'Solved {gained} new {plural}',
                description=f'Total solved: {user.total_solved}',
            ))
        await session.commit()
        await session.refresh(user)
    await invalidate_leaderboard(LEADERBOARD_DEFAULT_LIMIT)
    return user

# activities
async def list_activities(user_id: int, filter: str = 'all', limit: int = 50):
    """Newest first, each row joined with its author."""
    stmt = select(Activity, User).join(User, User.id == Activity.user_id)
    if filter == 'friends':
        friend_ids = [i for i in await list_friend_ids(user_id) if i != user_id]
        if not friend_ids:
            return []
        stmt = stmt.where(Activity.user_id.in_(friend_ids))
    stmt = stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)
    async with AsyncSessionLocal() as session:
        q = await session.execute(stmt)
        return [
            {
                'id': a.id,
                'activity_type': a.activity_type,
                'title': a.title,
                'description': a.description,
                'created_at': a.created_at,
                'user': {'id': u.id, 'username': u.username, 'name': u.name, 'avatar_url': u.avatar_url},
            }
            for a, u in q.all()
        ]

# leaderboard
def _leaderboard_row(rank: int, u: User) -> dict:
    return {
        'rank': rank,
        'id': u.id,
        'username': u.username,
        'name': u.name,
        'avatar_url': u.avatar_url,
        'total_solved': u.total_solved or 0,
        'easy_solved': u.easy_solved or 0,
        'medium_solved': u.medium_solved or 0,
        'hard_solved': u.hard_solved or 0,
        'contest_rating': u.contest_rating or 0,
        'current_streak': u.current_streak or 0,
    }

async def leaderboard(user_id: int, scope: str = 'global', limit: int = LEADERBOARD_DEFAULT_LIMIT):
    """Rows sorted by total solved, ties broken by user id."""
    if scope == 'global':
        cached = await get_cached_leaderboard(limit)
        if cached is not None:
            return cached
    stmt = select(User).where(User.is_active.is_(True))
    if scope == 'friends':
        ids = set(await list_friend_ids(user_id))
        ids.add(user_id)
        stmt = stmt.where(User.id.in_(ids))
    stmt = stmt.order_by(User.total_solved.desc(), User.id.asc()).limit(limit)
    async with AsyncSessionLocal() as session:
        q = await session.execute(stmt)
        rows = [_leaderboard_row(i, u) for i, u in enumerate(q.scalars().all(), start=1)]
    if scope == 'global':
        await cache_leaderboard(limit, rows)
    return rows

# search
async def search_users(viewer_id: int, query: str, limit: int = 20):
    term = sanitize_search_query(query)
    if len(term) < 2:
        raise ValidationFailed('Search query must be at least 2 characters',
                               details=[{'field': 'q', 'message': 'Must be at least 2 characters'}])
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(User)
            .where(
                User.id != viewer_id,
                User.is_active.is_(True),
                or_(
                    User.username.icontains(term, autoescape=True),
                    User.name.icontains(term, autoescape=True),
                    User.leetcode_username.icontains(term, autoescape=True),
                ),
            )
            .order_by(User.username.asc())
            .limit(limit)
        )
        users = q.scalars().all()
        if not users:
            return []
        ids = [u.id for u in users]
        eq = await session.execute(
            select(Friendship).where(or_(
                and_(Friendship.requester_id == viewer_id, Friendship.addressee_id.in_(ids)),
                and_(Friendship.addressee_id == viewer_id, Friendship.requester_id.in_(ids)),
            ))
        )
        edges = {f.other_user(viewer_id): f for f in eq.scalars().all()}
    results = []
    for u in users:
        edge = edges.get(u.id)
        results.append({
            'id': u.id,
            'username': u.username,
            'name': u.name,
            'avatar_url': u.avatar_url,
            'leetcode_username': u.leetcode_username,
            'total_solved': u.total_solved or 0,
            'friendship_status': friendship_status(edge, viewer_id),
            'friendship_id': edge.id if edge else None,
            'is_requester': edge.requester_id == viewer_id if edge else False,
        })
    return results
