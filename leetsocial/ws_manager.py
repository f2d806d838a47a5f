import asyncio
import logging
import uuid
from typing import Dict, Optional, Set
from fastapi import WebSocket

from . import core
from .cache import set_presence, clear_presence
from .core import WS_CONNECTIONS
from .models import utcnow

logger = logging.getLogger(__name__)

CLOSE_SLOW_CONSUMER = 4409


class ConnectionSession:
    """State of one realtime connection; only its own handler mutates it."""

    def __init__(self, connection_id: str, websocket: WebSocket):
        self.connection_id = connection_id
        self.websocket = websocket
        self.user_id: Optional[int] = None
        self.username: Optional[str] = None
        self.rooms: Set[int] = set()
        self.typing_rooms: Set[int] = set()
        self.connected_at = utcnow()
        self.last_seen = self.connected_at
        self.closed = False

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def touch(self):
        self.last_seen = utcnow()


class ConnectionManager:
    def __init__(self):
        self.sessions: Dict[str, ConnectionSession] = {}
        self.rooms: Dict[int, Set[str]] = {}
        self.user_connections: Dict[int, Set[str]] = {}
        self._room_locks: Dict[int, asyncio.Lock] = {}

    async def connect(self, websocket: WebSocket) -> ConnectionSession:
        await websocket.accept()
        session = ConnectionSession(uuid.uuid4().hex, websocket)
        self.sessions[session.connection_id] = session
        WS_CONNECTIONS.inc()
        return session

    async def bind_user(self, session: ConnectionSession, user_id: int, username: str) -> bool:
        """Attach an identity. True when this is the user's first live connection."""
        session.user_id = user_id
        session.username = username
        conns = self.user_connections.setdefault(user_id, set())
        first = not conns
        conns.add(session.connection_id)
        if first:
            await set_presence(user_id)
        return first

    def join(self, session: ConnectionSession, room_id: int):
        session.rooms.add(room_id)
        self.rooms.setdefault(room_id, set()).add(session.connection_id)

    def leave(self, session: ConnectionSession, room_id: int) -> bool:
        """Drop the room; True when the connection was typing in it."""
        session.rooms.discard(room_id)
        was_typing = room_id in session.typing_rooms
        session.typing_rooms.discard(room_id)
        self._forget(room_id, session.connection_id)
        return was_typing

    def _forget(self, room_id: int, connection_id: str):
        members = self.rooms.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room_id]

    def room_lock(self, room_id: int) -> asyncio.Lock:
        # one lock per room for the life of the process; never swapped while contended
        return self._room_locks.setdefault(room_id, asyncio.Lock())

    async def disconnect(self, session: ConnectionSession):
        """Release everything the connection held.

        Returns ``(rooms it was typing in, whether its user went offline)``.
        """
        if self.sessions.pop(session.connection_id, None) is None:
            return [], False
        WS_CONNECTIONS.dec()
        typing = sorted(session.typing_rooms)
        for room_id in list(session.rooms):
            self._forget(room_id, session.connection_id)
        session.rooms.clear()
        session.typing_rooms.clear()

        went_offline = False
        if session.user_id is not None:
            conns = self.user_connections.get(session.user_id, set())
            conns.discard(session.connection_id)
            if not conns:
                self.user_connections.pop(session.user_id, None)
                went_offline = True
                await clear_presence(session.user_id)
        return typing, went_offline

    async def send(self, session: ConnectionSession, frame: dict) -> bool:
        """Write one frame, bounded by ``WS_SEND_TIMEOUT_SECONDS``.

        A connection that does not drain in time is closed and skipped by later
        broadcasts.
        """
        if session.closed:
            return False
        try:
            await asyncio.wait_for(session.websocket.send_json(frame), timeout=core.WS_SEND_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.warning({'msg': 'ws_send_timeout', 'cid': session.connection_id, 'user_id': session.user_id})
            await self.close(session, CLOSE_SLOW_CONSUMER)
            return False
        except Exception as e:
            logger.debug({'msg': 'ws_send_failed', 'cid': session.connection_id, 'error': str(e)})
            return False

    async def emit(self, session: ConnectionSession, event: str, data=None) -> bool:
        return await self.send(session, {'event': event, 'data': data})

    async def close(self, session: ConnectionSession, code: int):
        if session.closed:
            return
        session.closed = True
        for room_id in list(session.rooms):
            self._forget(room_id, session.connection_id)
        try:
            await asyncio.wait_for(session.websocket.close(code=code), timeout=core.WS_SEND_TIMEOUT_SECONDS)
        except Exception as e:
            logger.debug({'msg': 'ws_close_failed', 'cid': session.connection_id, 'error': str(e)})

    async def broadcast_room(self, room_id: int, event: str, data=None, exclude: Optional[str] = None):
        targets = [
            self.sessions[cid] for cid in list(self.rooms.get(room_id, ()))
            if cid != exclude and cid in self.sessions and not self.sessions[cid].closed
        ]
        if targets:
            await asyncio.gather(*(self.emit(s, event, data) for s in targets))

    async def broadcast(self, event: str, data=None, exclude: Optional[str] = None):
        """Send to every authenticated connection."""
        targets = [s for cid, s in list(self.sessions.items()) if cid != exclude and s.authenticated and not s.closed]
        if targets:
            await asyncio.gather(*(self.emit(s, event, data) for s in targets))

    def online_user_ids(self):
        return sorted(self.user_connections)

    def is_online(self, user_id: int) -> bool:
        return bool(self.user_connections.get(user_id))
