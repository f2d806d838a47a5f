"""
Rooms and the message service.

Every operation checks room membership against the store before touching
messages. Writes that span several rows (message insert plus unread counters,
read receipt plus counter reset) run in a single session transaction.
"""
import logging
from collections import defaultdict
from sqlalchemy import select, update, delete, func, case, or_
from sqlalchemy.exc import IntegrityError

from .core import MESSAGES_SENT
from .errors import Conflict, Forbidden, NotFound, ValidationFailed
from .models import AsyncSessionLocal, utcnow, as_utc
from .models.friendships import Friendship, BLOCKED
from .models.messages import Message, Reaction, ReadReceipt, MESSAGE_TYPES, DELETED_PLACEHOLDER
from .models.rooms import Room, RoomMember, DIRECT, GROUP
from .models.users import User
from .sanitize import sanitize_file_name, sanitize_url, strip_html

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 5000
MAX_GROUP_MEMBERS = 100
FILE_TYPES = ('image', 'file')


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def _user_brief(user: User) -> dict:
    if user is None:
        return None
    return {'id': user.id, 'username': user.username, 'name': user.name, 'avatarUrl': user.avatar_url}


def serialize_message(message: Message, sender: User, reactions=None) -> dict:
    return {
        'id': message.id,
        'roomId': message.room_id,
        'senderId': message.sender_id,
        'content': message.content,
        'type': message.type,
        'replyToId': message.reply_to_id,
        'isEdited': bool(message.is_edited),
        'isDeleted': bool(message.is_deleted),
        'isPinned': bool(message.is_pinned),
        'createdAt': _iso(message.created_at),
        'updatedAt': _iso(message.updated_at),
        'editedAt': _iso(message.edited_at),
        'fileUrl': message.file_url,
        'fileName': message.file_name,
        'fileSize': message.file_size,
        'mimeType': message.mime_type,
        'thumbnailUrl': message.thumbnail_url,
        'codeLanguage': message.code_language,
        'sender': _user_brief(sender),
        'reactions': reactions or [],
    }


def room_summary(room: Room, member_ids) -> dict:
    return {
        'id': room.id,
        'type': room.type,
        'name': room.name,
        'description': room.description,
        'avatar_url': room.avatar_url,
        'created_by': room.created_by,
        'created_at': room.created_at,
        'last_message_at': room.last_message_at,
        'member_ids': sorted(member_ids),
    }


def _check_content(content: str | None, required: bool) -> str:
    text = content or ''
    if required and not text.strip():
        raise ValidationFailed(details=[{'field': 'content', 'message': 'Message content is required'}])
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationFailed(details=[{'field': 'content', 'message': f'Message must be at most {MAX_CONTENT_LENGTH} characters'}])
    return text


async def _get_member(session, room_id: int, user_id: int):
    q = await session.execute(select(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id))
    return q.scalars().first()


async def _require_member(session, room_id: int, user_id: int) -> RoomMember:
    member = await _get_member(session, room_id, user_id)
    if member:
        return member
    if not await session.get(Room, room_id):
        raise NotFound('Room not found')
    raise Forbidden('Not a member of this room')


async def _pair_blocked(session, low: int, high: int) -> bool:
    q = await session.execute(
        select(Friendship.id).where(Friendship.user_low_id == low, Friendship.user_high_id == high,
                                    Friendship.status == BLOCKED)
    )
    return q.first() is not None


async def _message_for_member(session, message_id: int, user_id: int) -> Message:
    message = await session.get(Message, message_id)
    if not message:
        raise NotFound('Message not found')
    await _require_member(session, message.room_id, user_id)
    return message


async def _reactions_for(session, message_ids) -> dict:
    """``{message_id: [{emoji, count, users}]}`` in first-reacted order."""
    if not message_ids:
        return {}
    q = await session.execute(
        select(Reaction).where(Reaction.message_id.in_(message_ids)).order_by(Reaction.id)
    )
    grouped = defaultdict(dict)
    for r in q.scalars().all():
        entry = grouped[r.message_id].setdefault(r.emoji, {'emoji': r.emoji, 'count': 0, 'users': []})
        entry['count'] += 1
        entry['users'].append(r.user_id)
    return {mid: list(by_emoji.values()) for mid, by_emoji in grouped.items()}


# rooms
async def create_direct_room(user_id: int, other_id: int) -> dict:
    """Return the pair's direct room, creating it on first use."""
    if user_id == other_id:
        raise ValidationFailed('Cannot start a direct chat with yourself')
    low, high = sorted((user_id, other_id))
    key = f'{low}:{high}'
    async with AsyncSessionLocal() as session:
        other = await session.get(User, other_id)
        if not other or not other.is_active:
            raise NotFound('User not found')
        if await _pair_blocked(session, low, high):
            raise Forbidden('Cannot message this user')

        q = await session.execute(select(Room).where(Room.direct_key == key))
        room = q.scalars().first()
        if not room:
            room = Room(type=DIRECT, created_by=user_id, direct_key=key)
            session.add(room)
            try:
                await session.flush()
                session.add_all([
                    RoomMember(room_id=room.id, user_id=user_id, role='member'),
                    RoomMember(room_id=room.id, user_id=other_id, role='member'),
                ])
                await session.commit()
                logger.info({'msg': 'direct_room_created', 'room_id': room.id})
            except IntegrityError:
                # created concurrently by the other participant
                await session.rollback()
                q = await session.execute(select(Room).where(Room.direct_key == key))
                room = q.scalars().first()
        return room_summary(room, (low, high))


async def create_group_room(creator_id: int, name: str, member_ids=(), description: str | None = None) -> dict:
    clean_name = strip_html(name or '').strip()
    if not clean_name or len(clean_name) > 100:
        raise ValidationFailed(details=[{'field': 'name', 'message': 'Name must be between 1 and 100 characters'}])
    if description is not None:
        description = strip_html(description).strip() or None
        if description and len(description) > 500:
            raise ValidationFailed(details=[{'field': 'description', 'message': 'Description must be at most 500 characters'}])
    others = {m for m in member_ids if m != creator_id}
    if len(others) + 1 > MAX_GROUP_MEMBERS:
        raise ValidationFailed(f'A group can have at most {MAX_GROUP_MEMBERS} members')
    async with AsyncSessionLocal() as session:
        if others:
            q = await session.execute(select(User.id).where(User.id.in_(others), User.is_active.is_(True)))
            missing = others - set(q.scalars().all())
            if missing:
                raise NotFound('User not found', details={'missing': sorted(missing)})
        room = Room(type=GROUP, name=clean_name, description=description, created_by=creator_id)
        session.add(room)
        await session.flush()
        session.add(RoomMember(room_id=room.id, user_id=creator_id, role='admin'))
        session.add_all([RoomMember(room_id=room.id, user_id=u, role='member') for u in others])
        await session.commit()
        logger.info({'msg': 'group_room_created', 'room_id': room.id, 'members': len(others) + 1})
        return room_summary(room, others | {creator_id})


async def invite_member(room_id: int, inviter_id: int, user_id: int) -> dict:
    async with AsyncSessionLocal() as session:
        room = await session.get(Room, room_id)
        if not room:
            raise NotFound('Room not found')
        await _require_member(session, room_id, inviter_id)
        if room.type != GROUP:
            raise ValidationFailed('Members can only be added to group rooms')
        user = await session.get(User, user_id)
        if not user or not user.is_active:
            raise NotFound('User not found')
        if await _get_member(session, room_id, user_id):
            raise Conflict('User is already a member', code='ALREADY_MEMBER')
        session.add(RoomMember(room_id=room_id, user_id=user_id, role='member'))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise Conflict('User is already a member', code='ALREADY_MEMBER')
        q = await session.execute(select(RoomMember.user_id).where(RoomMember.room_id == room_id))
        return room_summary(room, q.scalars().all())


async def is_room_member(room_id: int, user_id: int) -> bool:
    async with AsyncSessionLocal() as session:
        return await _get_member(session, room_id, user_id) is not None


async def require_membership(room_id: int, user_id: int):
    async with AsyncSessionLocal() as session:
        await _require_member(session, room_id, user_id)


async def get_room_member_ids(room_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(RoomMember.user_id).where(RoomMember.room_id == room_id))
        return q.scalars().all()


async def list_user_rooms(user_id: int):
    """Rooms the user belongs to, most recently active first."""
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Room, RoomMember).join(RoomMember, RoomMember.room_id == Room.id).where(RoomMember.user_id == user_id)
        )
        pairs = q.all()
        if not pairs:
            return []
        room_ids = [room.id for room, _ in pairs]

        mq = await session.execute(
            select(RoomMember.room_id, User)
            .join(User, User.id == RoomMember.user_id)
            .where(RoomMember.room_id.in_(room_ids))
            .order_by(RoomMember.id)
        )
        members = defaultdict(list)
        for rid, u in mq.all():
            members[rid].append({'id': u.id, 'username': u.username, 'name': u.name, 'avatar_url': u.avatar_url})

        latest = select(func.max(Message.id)).where(Message.room_id.in_(room_ids)).group_by(Message.room_id)
        lq = await session.execute(
            select(Message, User).join(User, User.id == Message.sender_id).where(Message.id.in_(latest))
        )
        last = {m.room_id: serialize_message(m, u) for m, u in lq.all()}

    rooms = []
    for room, member in pairs:
        data = room_summary(room, [m['id'] for m in members[room.id]])
        data.update({
            'role': member.role,
            'unread_count': member.unread_count,
            'is_pinned': member.is_pinned,
            'is_muted': member.is_muted,
            'members': members[room.id],
            'last_message': last.get(room.id),
        })
        rooms.append(data)
    rooms.sort(key=lambda r: (as_utc(r['last_message_at'] or r['created_at']), r['id']), reverse=True)
    return rooms


# messages
async def create_message(room_id: int, sender_id: int, content: str | None = None, type: str = 'text',
                         reply_to_id: int | None = None, file_url: str | None = None,
                         file_name: str | None = None, file_size: int | None = None,
                         mime_type: str | None = None, thumbnail_url: str | None = None,
                         code_language: str | None = None) -> dict:
    """Persist a message and bump every other member's unread counter in one transaction."""
    msg_type = type or 'text'
    if msg_type not in MESSAGE_TYPES:
        raise ValidationFailed(details=[{'field': 'type', 'message': f'Must be one of {", ".join(MESSAGE_TYPES)}'}])
    text = _check_content(content, required=msg_type not in FILE_TYPES)
    if msg_type in FILE_TYPES:
        file_url = sanitize_url(file_url or '')
        if not file_url:
            raise ValidationFailed(details=[{'field': 'fileUrl', 'message': 'A valid http(s) URL is required'}])
    thumbnail_url = sanitize_url(thumbnail_url) if thumbnail_url else None
    file_name = sanitize_file_name(file_name) if file_name else None

    async with AsyncSessionLocal() as session:
        await _require_member(session, room_id, sender_id)
        room = await session.get(Room, room_id)
        if room.type == DIRECT and room.direct_key:
            low, high = (int(part) for part in room.direct_key.split(':'))
            if await _pair_blocked(session, low, high):
                raise Forbidden('Cannot message this user')
        if reply_to_id is not None:
            parent = await session.get(Message, reply_to_id)
            if not parent or parent.room_id != room_id:
                raise ValidationFailed(details=[{'field': 'replyToId', 'message': 'Reply target is not in this room'}])
        now = utcnow()
        message = Message(
            room_id=room_id,
            sender_id=sender_id,
            content=text,
            type=msg_type,
            reply_to_id=reply_to_id,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            thumbnail_url=thumbnail_url,
            code_language=code_language,
            created_at=now,
            updated_at=now,
        )
        session.add(message)
        await session.flush()
        await session.execute(
            update(Room).where(Room.id == room_id).values(last_message_at=now, updated_at=now)
        )
        await session.execute(
            update(RoomMember)
            .where(RoomMember.room_id == room_id, RoomMember.user_id != sender_id)
            .values(unread_count=RoomMember.unread_count + 1)
        )
        sender = await session.get(User, sender_id)
        await session.commit()
    MESSAGES_SENT.inc()
    return serialize_message(message, sender)


async def get_messages(room_id: int, user_id: int, limit: int = 50, before_id: int | None = None):
    """A page of history, oldest first. ``before_id`` pages backwards."""
    async with AsyncSessionLocal() as session:
        await _require_member(session, room_id, user_id)
        stmt = select(Message, User).join(User, User.id == Message.sender_id).where(Message.room_id == room_id)
        if before_id is not None:
            stmt = stmt.where(Message.id < before_id)
        q = await session.execute(stmt.order_by(Message.id.desc()).limit(limit))
        rows = list(reversed(q.all()))
        reactions = await _reactions_for(session, [m.id for m, _ in rows])
    return [serialize_message(m, u, reactions.get(m.id)) for m, u in rows]


async def _mutate_own_message(message_id: int, user_id: int, action: str, apply) -> dict:
    async with AsyncSessionLocal() as session:
        message = await _message_for_member(session, message_id, user_id)
        if message.sender_id != user_id:
            raise Forbidden(f'Only the sender can {action} this message')
        if message.is_deleted:
            raise Conflict('Message has been deleted', code='MESSAGE_DELETED')
        apply(message, utcnow())
        await session.commit()
        sender = await session.get(User, message.sender_id)
        reactions = await _reactions_for(session, [message.id])
    return serialize_message(message, sender, reactions.get(message.id))


async def edit_message(message_id: int, user_id: int, content: str) -> dict:
    text = _check_content(content, required=True)

    def apply(message, now):
        message.content = text
        message.is_edited = True
        message.edited_at = now
        message.updated_at = now

    return await _mutate_own_message(message_id, user_id, 'edit', apply)


async def delete_message(message_id: int, user_id: int) -> dict:
    def apply(message, now):
        message.content = DELETED_PLACEHOLDER
        message.is_deleted = True
        message.deleted_at = now
        message.updated_at = now

    return await _mutate_own_message(message_id, user_id, 'delete', apply)


async def pin_message(message_id: int, user_id: int, pinned: bool = True) -> dict:
    async with AsyncSessionLocal() as session:
        message = await _message_for_member(session, message_id, user_id)
        if message.is_deleted:
            raise Conflict('Message has been deleted', code='MESSAGE_DELETED')
        message.is_pinned = bool(pinned)
        await session.commit()
        sender = await session.get(User, message.sender_id)
        reactions = await _reactions_for(session, [message.id])
    return serialize_message(message, sender, reactions.get(message.id))


def _check_emoji(emoji: str | None) -> str:
    value = (emoji or '').strip()
    if not value or len(value) > 32:
        raise ValidationFailed(details=[{'field': 'emoji', 'message': 'Emoji is required'}])
    return value


async def add_reaction(message_id: int, user_id: int, emoji: str) -> dict:
    """Idempotent; reacting twice with the same emoji is a no-op."""
    emoji = _check_emoji(emoji)
    async with AsyncSessionLocal() as session:
        message = await _message_for_member(session, message_id, user_id)
        if message.is_deleted:
            raise Conflict('Message has been deleted', code='MESSAGE_DELETED')
        room_id = message.room_id
        q = await session.execute(
            select(Reaction.id).where(Reaction.message_id == message_id, Reaction.user_id == user_id, Reaction.emoji == emoji)
        )
        if not q.first():
            session.add(Reaction(message_id=message_id, user_id=user_id, emoji=emoji))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
        reactions = await _reactions_for(session, [message_id])
    return {'messageId': message_id, 'roomId': room_id, 'userId': user_id, 'emoji': emoji,
            'reactions': reactions.get(message_id, [])}


async def remove_reaction(message_id: int, user_id: int, emoji: str) -> dict:
    emoji = _check_emoji(emoji)
    async with AsyncSessionLocal() as session:
        message = await _message_for_member(session, message_id, user_id)
        await session.execute(
            delete(Reaction)
            .where(Reaction.message_id == message_id, Reaction.user_id == user_id, Reaction.emoji == emoji)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        reactions = await _reactions_for(session, [message_id])
        room_id = message.room_id
    return {'messageId': message_id, 'roomId': room_id, 'userId': user_id, 'emoji': emoji,
            'reactions': reactions.get(message_id, [])}


async def mark_as_read(room_id: int, user_id: int, message_id: int | None = None) -> dict:
    """Advance the read marker (never backwards) and zero the unread counter."""
    async with AsyncSessionLocal() as session:
        await _require_member(session, room_id, user_id)
        if message_id is None:
            q = await session.execute(select(func.max(Message.id)).where(Message.room_id == room_id))
            message_id = q.scalar()
        else:
            target = await session.get(Message, message_id)
            if not target or target.room_id != room_id:
                raise NotFound('Message not found')

        for _ in range(2):
            now = utcnow()
            q = await session.execute(
                select(ReadReceipt.id).where(ReadReceipt.room_id == room_id, ReadReceipt.user_id == user_id)
            )
            receipt_id = q.scalar()
            if receipt_id is None:
                session.add(ReadReceipt(room_id=room_id, user_id=user_id, message_id=message_id, read_at=now))
            else:
                values = {'read_at': now}
                if message_id is not None:
                    values['message_id'] = case(
                        (or_(ReadReceipt.message_id.is_(None), ReadReceipt.message_id < message_id), message_id),
                        else_=ReadReceipt.message_id,
                    )
                await session.execute(
                    update(ReadReceipt).where(ReadReceipt.id == receipt_id).values(**values)
                    .execution_options(synchronize_session=False)
                )
            await session.execute(
                update(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
                .values(unread_count=0)
            )
            try:
                await session.commit()
                break
            except IntegrityError:
                # a concurrent first read inserted the receipt
                await session.rollback()

        q = await session.execute(
            select(ReadReceipt)
            .where(ReadReceipt.room_id == room_id, ReadReceipt.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        receipt = q.scalars().first()
    return {'roomId': room_id, 'userId': user_id, 'messageId': receipt.message_id, 'readAt': _iso(receipt.read_at)}


async def get_unread_counts(user_id: int) -> dict:
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(RoomMember.room_id, RoomMember.unread_count).where(RoomMember.user_id == user_id)
        )
        return {room_id: count for room_id, count in q.all()}
