"""
Realtime chat gateway.

A single WebSocket endpoint speaking JSON frames::

    client -> {"event": "send_message", "data": {...}, "ack": 7}
    server -> {"event": "new_message", "data": {...}}
    server -> {"event": "ack", "ack": 7, "data": {"success": true, ...}}

A connection is anonymous until it sends ``authenticate`` with an access
token. Errors are reported per frame; only a failed authentication, the idle
timeout or a connection that stops draining its frames closes the socket.

Every server event carries an object payload, so presence events are
``user_online {userId, username}`` and ``user_offline {userId}`` rather than a
bare user id.
"""
import asyncio
import json
import logging
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from . import chat, core
from .auth import resolve_token
from .core import setup_logging
from .errors import AppError, Forbidden, RateLimited, ValidationFailed
from .ratelimit import RateLimiter
from .schemas.events import (
    AuthenticateIn,
    RoomIn,
    SendMessageIn,
    MessageIn,
    EditMessageIn,
    PinMessageIn,
    ReactionIn,
    MarkReadIn,
    StatusIn,
)
from .ws_manager import ConnectionManager, ConnectionSession

logger = logging.getLogger(__name__)

CLOSE_AUTH_FAILED = 4401
CLOSE_IDLE = 4408


def _validation_failed(exc: ValidationError) -> ValidationFailed:
    details = [
        {'field': '.'.join(str(p) for p in err.get('loc', ())), 'message': err.get('msg')}
        for err in exc.errors()
    ]
    return ValidationFailed(details=details)


class Gateway:
    def __init__(self, manager: ConnectionManager, limiter: RateLimiter):
        self.manager = manager
        self.limiter = limiter
        self.handlers = {
            'join_room': (self.join_room, RoomIn),
            'leave_room': (self.leave_room, RoomIn),
            'send_message': (self.send_message, SendMessageIn),
            'edit_message': (self.edit_message, EditMessageIn),
            'delete_message': (self.delete_message, MessageIn),
            'pin_message': (self.pin_message, PinMessageIn),
            'add_reaction': (self.add_reaction, ReactionIn),
            'remove_reaction': (self.remove_reaction, ReactionIn),
            'mark_as_read': (self.mark_as_read, MarkReadIn),
            'typing_start': (self.typing_start, RoomIn),
            'typing_stop': (self.typing_stop, RoomIn),
            'update_status': (self.update_status, StatusIn),
        }

    async def _ack(self, session: ConnectionSession, ack, success: bool, payload=None):
        if ack is None:
            return
        body = {'success': success}
        body.update(payload or {})
        await self.manager.send(session, {'event': 'ack', 'ack': ack, 'data': body})

    async def _fail(self, session: ConnectionSession, ack, code: str, message: str):
        if ack is None:
            await self.manager.emit(session, 'error', {'code': code, 'message': message})
        else:
            await self._ack(session, ack, False, {'code': code, 'error': message})

    async def handle_frame(self, session: ConnectionSession, raw: str) -> bool:
        """Process one client frame. False means the connection must be closed."""
        if len(raw) > core.WS_MAX_FRAME_BYTES:
            await self._fail(session, None, 'BAD_REQUEST', 'Frame too large')
            return True
        try:
            frame = json.loads(raw)
        except ValueError:
            await self._fail(session, None, 'BAD_REQUEST', 'Invalid JSON')
            return True
        if not isinstance(frame, dict) or not isinstance(frame.get('event'), str):
            await self._fail(session, None, 'BAD_REQUEST', 'Frame must be an object with an event name')
            return True
        event, data, ack = frame['event'], frame.get('data'), frame.get('ack')

        if event == 'authenticate':
            return await self.authenticate(session, data, ack)
        if event == 'ping':
            await self.manager.emit(session, 'pong', {})
            await self._ack(session, ack, True)
            return True
        entry = self.handlers.get(event)
        if entry is None:
            await self._fail(session, ack, 'BAD_REQUEST', f'Unknown event: {event}')
            return True
        if not session.authenticated:
            await self._fail(session, ack, 'NOT_AUTHENTICATED', 'Authenticate first')
            return True
        handler, schema = entry
        try:
            result = await handler(session, schema.parse(data))
        except ValidationError as e:
            error = _validation_failed(e)
            await self._fail(session, ack, error.code, error.message)
            return True
        except AppError as e:
            await self._fail(session, ack, e.code, e.message)
            return True
        except Exception:
            logger.exception({'msg': 'ws_handler_error', 'event': event, 'cid': session.connection_id})
            await self._fail(session, ack, 'INTERNAL_ERROR', 'Internal server error')
            return True
        await self._ack(session, ack, True, result)
        return True

    async def authenticate(self, session: ConnectionSession, data, ack) -> bool:
        try:
            token = AuthenticateIn.parse(data).token
        except ValidationError:
            token = None
        user = await resolve_token(token)
        if not user or (session.authenticated and session.user_id != user['id']):
            logger.info({'msg': 'ws_auth_failed', 'cid': session.connection_id})
            await self.manager.emit(session, 'authenticated', {'success': False})
            await self.manager.emit(session, 'error', {'code': 'AUTH_FAILED', 'message': 'Authentication failed'})
            await self._ack(session, ack, False, {'code': 'AUTH_FAILED'})
            await self.manager.close(session, CLOSE_AUTH_FAILED)
            return False
        first = False
        if not session.authenticated:
            first = await self.manager.bind_user(session, user['id'], user['username'])
        payload = {
            'success': True,
            'userId': user['id'],
            'username': user['username'],
            'onlineUsers': self.manager.online_user_ids(),
        }
        await self.manager.emit(session, 'authenticated', payload)
        await self._ack(session, ack, True, {'userId': user['id']})
        if first:
            await self.manager.broadcast('user_online', {'userId': user['id'], 'username': user['username']},
                                         exclude=session.connection_id)
        logger.info({'msg': 'ws_authenticated', 'cid': session.connection_id, 'user_id': user['id']})
        return True

    async def join_room(self, session, payload: RoomIn):
        room_id = payload.room_id
        await chat.require_membership(room_id, session.user_id)
        self.manager.join(session, room_id)
        await chat.mark_as_read(room_id, session.user_id)
        await self.manager.emit(session, 'room_joined', {'roomId': room_id})
        return {'roomId': room_id}

    async def leave_room(self, session, payload: RoomIn):
        room_id = payload.room_id
        if self.manager.leave(session, room_id):
            await self.manager.broadcast_room(room_id, 'user_stopped_typing',
                                              {'roomId': room_id, 'userId': session.user_id})
        await self.manager.emit(session, 'room_left', {'roomId': room_id})
        return {'roomId': room_id}

    async def send_message(self, session, payload: SendMessageIn):
        room_id = payload.room_id
        limit = self.limiter.check('message', f'user:{session.user_id}')
        if not limit.allowed:
            raise RateLimited(retry_after=limit.retry_after(self.limiter.now_ms()),
                              message='Sending messages too fast')
        # persist and fan out under the room lock so every member sees commit order
        async with self.manager.room_lock(room_id):
            message = await chat.create_message(
                room_id,
                session.user_id,
                content=payload.content,
                type=payload.type,
                reply_to_id=payload.reply_to_id,
                file_url=payload.file_url,
                file_name=payload.file_name,
                file_size=payload.file_size,
                mime_type=payload.mime_type,
                thumbnail_url=payload.thumbnail_url,
                code_language=payload.code_language,
            )
            await self.manager.broadcast_room(room_id, 'new_message', message)
        if room_id in session.typing_rooms:
            session.typing_rooms.discard(room_id)
            await self.manager.broadcast_room(room_id, 'user_stopped_typing',
                                              {'roomId': room_id, 'userId': session.user_id},
                                              exclude=session.connection_id)
        return {'message': message}

    async def _relay(self, room_id: int, event: str, payload):
        async with self.manager.room_lock(room_id):
            await self.manager.broadcast_room(room_id, event, payload)

    async def edit_message(self, session, payload: EditMessageIn):
        message = await chat.edit_message(payload.message_id, session.user_id, payload.content)
        await self._relay(message['roomId'], 'message_edited', message)
        return {'message': message}

    async def delete_message(self, session, payload: MessageIn):
        message = await chat.delete_message(payload.message_id, session.user_id)
        await self._relay(message['roomId'], 'message_deleted', message)
        return {'message': message}

    async def pin_message(self, session, payload: PinMessageIn):
        message = await chat.pin_message(payload.message_id, session.user_id, payload.pinned)
        await self._relay(message['roomId'], 'message_pinned', message)
        return {'message': message}

    async def add_reaction(self, session, payload: ReactionIn):
        result = await chat.add_reaction(payload.message_id, session.user_id, payload.emoji)
        await self._relay(result['roomId'], 'reaction_added', result)
        return result

    async def remove_reaction(self, session, payload: ReactionIn):
        result = await chat.remove_reaction(payload.message_id, session.user_id, payload.emoji)
        await self._relay(result['roomId'], 'reaction_removed', result)
        return result

    async def mark_as_read(self, session, payload: MarkReadIn):
        receipt = await chat.mark_as_read(payload.room_id, session.user_id, payload.message_id)
        await self.manager.broadcast_room(payload.room_id, 'messages_read', receipt)
        return receipt

    async def typing_start(self, session, payload: RoomIn):
        room_id = payload.room_id
        if room_id not in session.rooms:
            raise Forbidden('Join the room first')
        session.typing_rooms.add(room_id)
        await self.manager.broadcast_room(
            room_id, 'user_typing',
            {'roomId': room_id, 'userId': session.user_id, 'username': session.username},
            exclude=session.connection_id,
        )
        return {'roomId': room_id}

    async def typing_stop(self, session, payload: RoomIn):
        room_id = payload.room_id
        session.typing_rooms.discard(room_id)
        if room_id in session.rooms:
            await self.manager.broadcast_room(room_id, 'user_stopped_typing',
                                              {'roomId': room_id, 'userId': session.user_id},
                                              exclude=session.connection_id)
        return {'roomId': room_id}

    async def update_status(self, session, payload: StatusIn):
        await self.manager.broadcast('user_status_changed', {'userId': session.user_id, 'status': payload.status},
                                     exclude=session.connection_id)
        return {'status': payload.status}

    async def release(self, session: ConnectionSession):
        typing, went_offline = await self.manager.disconnect(session)
        for room_id in typing:
            await self.manager.broadcast_room(room_id, 'user_stopped_typing',
                                              {'roomId': room_id, 'userId': session.user_id})
        if went_offline:
            await self.manager.broadcast('user_offline', {'userId': session.user_id})
        logger.info({'msg': 'ws_disconnected', 'cid': session.connection_id, 'user_id': session.user_id})


realtime_app = FastAPI(title="LeetSocial Realtime", version="0.3.0")
gateway = Gateway(ConnectionManager(), RateLimiter())
realtime_app.state.gateway = gateway


@realtime_app.on_event("startup")
async def startup():
    setup_logging()


@realtime_app.get('/healthz')
async def healthz():
    return {'status': 'ok', 'connections': len(gateway.manager.sessions)}


@realtime_app.websocket('/ws')
async def realtime_ws(websocket: WebSocket):
    session = await gateway.manager.connect(websocket)
    logger.info({'msg': 'ws_connected', 'cid': session.connection_id})
    try:
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=core.WS_IDLE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.info({'msg': 'ws_idle_timeout', 'cid': session.connection_id})
                await gateway.manager.close(session, CLOSE_IDLE)
                break
            session.touch()
            if not await gateway.handle_frame(session, raw) or session.closed:
                break
    except WebSocketDisconnect:
        pass
    except Exception:
        if not session.closed:
            logger.exception({'msg': 'ws_connection_error', 'cid': session.connection_id})
    finally:
        await gateway.release(session)
