import asyncio
import json
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from leetsocial import chat, core
from leetsocial.gateway import Gateway, realtime_app, gateway
from leetsocial.ratelimit import LimitConfig, RateLimiter
from leetsocial.ws_manager import CLOSE_SLOW_CONSUMER, ConnectionManager


def run(coro):
    return asyncio.run(coro)


def wait_for(ws, event, limit=20):
    """Read frames until ``event`` arrives; other events are skipped."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame['event'] == event:
            return frame
    raise AssertionError(f'{event} not received')


def wait_for_ack(ws, ack_id, limit=20):
    for _ in range(limit):
        frame = ws.receive_json()
        if frame['event'] == 'ack' and frame['ack'] == ack_id:
            return frame['data']
    raise AssertionError(f'ack {ack_id} not received')


def authenticate(ws, token):
    ws.send_json({'event': 'authenticate', 'data': {'token': token}})
    frame = wait_for(ws, 'authenticated')
    assert frame['data']['success'] is True
    return frame['data']


@pytest.fixture
def chat_pair(make_user, make_token):
    async def _setup():
        alice = await make_user('alice')
        bob = await make_user('bob')
        carol = await make_user('carol')
        room = await chat.create_direct_room(alice.id, bob.id)
        return {
            'alice': alice, 'bob': bob, 'carol': carol, 'room': room['id'],
            'alice_token': await make_token(alice),
            'bob_token': await make_token(bob),
            'carol_token': await make_token(carol),
        }
    return run(_setup())


def test_operations_require_authentication(chat_pair):
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            ws.send_json({'event': 'join_room', 'data': {'roomId': chat_pair['room']}})
            frame = wait_for(ws, 'error')
            assert frame['data']['code'] == 'NOT_AUTHENTICATED'

            ws.send_json({'event': 'send_message', 'data': {'roomId': chat_pair['room'], 'content': 'hi'}, 'ack': 1})
            ack = wait_for_ack(ws, 1)
            assert ack == {'success': False, 'code': 'NOT_AUTHENTICATED', 'error': 'Authenticate first'}

            # connection is still usable
            data = authenticate(ws, chat_pair['alice_token'])
            assert data['userId'] == chat_pair['alice'].id
            assert run(chat.get_messages(chat_pair['room'], chat_pair['alice'].id)) == []


def test_bad_token_closes_connection():
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            ws.send_json({'event': 'authenticate', 'data': {'token': 'not-a-token'}})
            assert ws.receive_json() == {'event': 'authenticated', 'data': {'success': False}}
            frame = ws.receive_json()
            assert frame['event'] == 'error'
            assert frame['data']['code'] == 'AUTH_FAILED'
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4401


def test_join_room_checks_membership(chat_pair):
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            authenticate(ws, chat_pair['carol_token'])
            ws.send_json({'event': 'join_room', 'data': {'roomId': chat_pair['room']}})
            frame = wait_for(ws, 'error')
            assert frame['data']['code'] == 'FORBIDDEN'

            ws.send_json({'event': 'join_room', 'data': 999999})
            frame = wait_for(ws, 'error')
            assert frame['data']['code'] == 'NOT_FOUND'


def test_message_fanout_in_commit_order(chat_pair):
    room = chat_pair['room']
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as a, client.websocket_connect('/ws') as b:
            authenticate(a, chat_pair['alice_token'])
            authenticate(b, chat_pair['bob_token'])
            a.send_json({'event': 'join_room', 'data': {'roomId': room}})
            wait_for(a, 'room_joined')
            b.send_json({'event': 'join_room', 'data': room})
            assert wait_for(b, 'room_joined')['data'] == {'roomId': room}

            sent = []
            for i in range(3):
                # a spoofed userId is ignored
                a.send_json({'event': 'send_message', 'ack': i,
                             'data': {'roomId': room, 'content': f'msg {i}', 'userId': chat_pair['bob'].id}})
                ack = wait_for_ack(a, i)
                assert ack['success'] is True
                sent.append(ack['message']['id'])

            received = [wait_for(b, 'new_message')['data'] for _ in range(3)]
            assert [m['id'] for m in received] == sent
            assert sent == sorted(sent)
            assert all(m['senderId'] == chat_pair['alice'].id for m in received)
            assert received[0]['sender']['username'] == 'alice'
            assert received[0]['createdAt'] is not None

    history = run(chat.get_messages(room, chat_pair['bob'].id))
    assert [m['id'] for m in history] == sent
    assert [m['content'] for m in history] == ['msg 0', 'msg 1', 'msg 2']


def test_typing_presence_and_disconnect(chat_pair):
    room = chat_pair['room']
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as b:
            authenticate(b, chat_pair['bob_token'])
            b.send_json({'event': 'join_room', 'data': {'roomId': room}})
            wait_for(b, 'room_joined')

            with client.websocket_connect('/ws') as a:
                authenticate(a, chat_pair['alice_token'])
                online = wait_for(b, 'user_online')
                assert online['data']['userId'] == chat_pair['alice'].id

                a.send_json({'event': 'join_room', 'data': {'roomId': room}})
                wait_for(a, 'room_joined')
                a.send_json({'event': 'typing_start', 'data': {'roomId': room}, 'ack': 't1'})
                assert wait_for_ack(a, 't1')['success'] is True
                typing = wait_for(b, 'user_typing')
                assert typing['data'] == {'roomId': room, 'userId': chat_pair['alice'].id, 'username': 'alice'}

            # alice dropped while typing
            stopped = wait_for(b, 'user_stopped_typing')
            assert stopped['data'] == {'roomId': room, 'userId': chat_pair['alice'].id}
            offline = wait_for(b, 'user_offline')
            assert offline['data'] == {'userId': chat_pair['alice'].id}
            assert not gateway.manager.is_online(chat_pair['alice'].id)
            assert gateway.manager.is_online(chat_pair['bob'].id)


def test_edit_delete_and_reactions_are_relayed(chat_pair):
    room = chat_pair['room']
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as a, client.websocket_connect('/ws') as b:
            authenticate(a, chat_pair['alice_token'])
            authenticate(b, chat_pair['bob_token'])
            for ws in (a, b):
                ws.send_json({'event': 'join_room', 'data': {'roomId': room}})
                wait_for(ws, 'room_joined')

            a.send_json({'event': 'send_message', 'data': {'roomId': room, 'content': 'typo'}, 'ack': 1})
            message_id = wait_for_ack(a, 1)['message']['id']

            b.send_json({'event': 'edit_message', 'data': {'messageId': message_id, 'content': 'hacked'}, 'ack': 2})
            denied = wait_for_ack(b, 2)
            assert denied['success'] is False
            assert denied['code'] == 'FORBIDDEN'

            a.send_json({'event': 'edit_message', 'data': {'messageId': message_id, 'content': 'fixed'}})
            edited = wait_for(b, 'message_edited')['data']
            assert edited['content'] == 'fixed' and edited['isEdited'] is True

            b.send_json({'event': 'add_reaction', 'data': {'messageId': message_id, 'emoji': '👍'}})
            reaction = wait_for(a, 'reaction_added')['data']
            assert reaction['reactions'] == [{'emoji': '👍', 'count': 1, 'users': [chat_pair['bob'].id]}]

            b.send_json({'event': 'mark_as_read', 'data': {'roomId': room}})
            read = wait_for(a, 'messages_read')['data']
            assert read['userId'] == chat_pair['bob'].id
            assert read['messageId'] == message_id

            a.send_json({'event': 'delete_message', 'data': {'messageId': message_id}})
            deleted = wait_for(b, 'message_deleted')['data']
            assert deleted['isDeleted'] is True
            assert deleted['content'] == '[Message deleted]'


def test_bad_frames_are_rejected_individually(chat_pair):
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            ws.send_text('{not json')
            assert wait_for(ws, 'error')['data']['code'] == 'BAD_REQUEST'
            ws.send_json({'event': 'launch_rockets', 'data': {}})
            assert wait_for(ws, 'error')['data']['code'] == 'BAD_REQUEST'
            ws.send_json({'event': 'ping'})
            assert wait_for(ws, 'pong')['event'] == 'pong'
            authenticate(ws, chat_pair['alice_token'])
            ws.send_json({'event': 'send_message', 'data': {'roomId': 'abc', 'content': 'x'}, 'ack': 9})
            ack = wait_for_ack(ws, 9)
            assert ack['success'] is False and ack['code'] == 'VALIDATION_ERROR'


def test_message_rate_limit(chat_pair, monkeypatch):
    monkeypatch.setitem(gateway.limiter.limits, 'message', LimitConfig(window_ms=60000, max_requests=2))
    room = chat_pair['room']
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            authenticate(ws, chat_pair['alice_token'])
            for i in range(3):
                ws.send_json({'event': 'send_message', 'data': {'roomId': room, 'content': str(i)}, 'ack': i})
            assert wait_for_ack(ws, 0)['success'] is True
            assert wait_for_ack(ws, 1)['success'] is True
            limited = wait_for_ack(ws, 2)
            assert limited['success'] is False
            assert limited['code'] == 'RATE_LIMITED'
    assert len(run(chat.get_messages(room, chat_pair['alice'].id))) == 2


def test_idle_connection_is_closed(monkeypatch):
    monkeypatch.setattr(core, 'WS_IDLE_TIMEOUT_SECONDS', 0.2)
    with TestClient(realtime_app) as client:
        with client.websocket_connect('/ws') as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4408
    assert gateway.manager.sessions == {}


class StubSocket:
    """Records outbound frames; a stuck socket never finishes a send or close."""

    def __init__(self, stuck=False):
        self.stuck = stuck
        self.frames = []
        self.close_code = None

    async def accept(self):
        pass

    async def send_json(self, data):
        if self.stuck:
            await asyncio.Event().wait()
        self.frames.append(data)

    async def close(self, code=1000):
        self.close_code = code
        if self.stuck:
            await asyncio.Event().wait()

    def events(self, name):
        return [f['data'] for f in self.frames if f.get('event') == name]

    def acks(self):
        return {f['ack']: f['data'] for f in self.frames if f.get('event') == 'ack'}


async def open_session(gw, user, room_id=None, stuck=False):
    session = await gw.manager.connect(StubSocket(stuck=stuck))
    await gw.manager.bind_user(session, user.id, user.username)
    if room_id is not None:
        gw.manager.join(session, room_id)
    return session


def frame(event, data, ack=None):
    return json.dumps({'event': event, 'data': data, 'ack': ack})


@pytest.fixture
def stub_gateway():
    return Gateway(ConnectionManager(), RateLimiter())


@pytest.mark.asyncio
async def test_stuck_receiver_does_not_freeze_room(make_user, stub_gateway, monkeypatch):
    monkeypatch.setattr(core, 'WS_SEND_TIMEOUT_SECONDS', 0.1)
    alice, bob, carol = await make_user('alice'), await make_user('bob'), await make_user('carol')
    room = await chat.create_group_room(alice.id, 'Grind', [bob.id, carol.id])
    a = await open_session(stub_gateway, alice, room['id'])
    b = await open_session(stub_gateway, bob, room['id'], stuck=True)
    c = await open_session(stub_gateway, carol, room['id'])

    await asyncio.wait_for(asyncio.gather(
        stub_gateway.handle_frame(a, frame('send_message', {'roomId': room['id'], 'content': 'one'}, 1)),
        stub_gateway.handle_frame(a, frame('send_message', {'roomId': room['id'], 'content': 'two'}, 2)),
    ), timeout=5)

    assert a.websocket.acks()[1]['success'] is True
    assert a.websocket.acks()[2]['success'] is True
    assert [m['content'] for m in c.websocket.events('new_message')] == ['one', 'two']
    assert b.closed
    assert b.websocket.close_code == CLOSE_SLOW_CONSUMER
    assert b.connection_id not in stub_gateway.manager.rooms[room['id']]

    # later traffic in the room skips the dropped connection entirely
    await asyncio.wait_for(
        stub_gateway.handle_frame(c, frame('send_message', {'roomId': room['id'], 'content': 'three'}, 3)),
        timeout=1,
    )
    assert [m['content'] for m in a.websocket.events('new_message')] == ['one', 'two', 'three']


@pytest.mark.asyncio
async def test_concurrent_senders_are_seen_in_commit_order(make_user, stub_gateway):
    alice, bob, carol = await make_user('alice'), await make_user('bob'), await make_user('carol')
    room = await chat.create_group_room(alice.id, 'Contest', [bob.id, carol.id])
    a = await open_session(stub_gateway, alice, room['id'])
    b = await open_session(stub_gateway, bob, room['id'])
    c = await open_session(stub_gateway, carol, room['id'])

    frames = []
    for i in range(5):
        frames.append(stub_gateway.handle_frame(a, frame('send_message', {'roomId': room['id'], 'content': f'a{i}'})))
        frames.append(stub_gateway.handle_frame(b, frame('send_message', {'roomId': room['id'], 'content': f'b{i}'})))
    await asyncio.gather(*frames)

    seen = [[m['id'] for m in s.websocket.events('new_message')] for s in (a, b, c)]
    assert len(seen[0]) == 10
    assert seen[0] == sorted(seen[0])
    assert seen[0] == seen[1] == seen[2]
    history = await chat.get_messages(room['id'], carol.id)
    assert [m['id'] for m in history] == seen[0]


@pytest.mark.asyncio
async def test_badly_typed_fields_are_validation_errors(make_user, stub_gateway):
    alice, bob = await make_user('alice'), await make_user('bob')
    room = await chat.create_direct_room(alice.id, bob.id)
    a = await open_session(stub_gateway, alice, room['id'])
    sent = await chat.create_message(room['id'], alice.id, content='hi')

    await stub_gateway.handle_frame(a, frame('send_message', {'roomId': room['id'], 'content': 123}, 1))
    await stub_gateway.handle_frame(a, frame('send_message', {'roomId': room['id'], 'type': 'file',
                                                             'fileUrl': 'https://x.io/a', 'fileName': 5}, 2))
    await stub_gateway.handle_frame(a, frame('add_reaction', {'messageId': sent['id'], 'emoji': 7}, 3))
    await stub_gateway.handle_frame(a, frame('pin_message', ['not', 'an', 'object'], 4))

    acks = a.websocket.acks()
    for ack_id, field in ((1, 'content'), (2, 'fileName'), (3, 'emoji')):
        assert acks[ack_id]['success'] is False
        assert acks[ack_id]['code'] == 'VALIDATION_ERROR'
    assert acks[4]['code'] == 'VALIDATION_ERROR'
    assert len(await chat.get_messages(room['id'], alice.id)) == 1


@pytest.mark.asyncio
async def test_oversized_frame_is_rejected(make_user, stub_gateway, monkeypatch):
    monkeypatch.setattr(core, 'WS_MAX_FRAME_BYTES', 64)
    alice, bob = await make_user('alice'), await make_user('bob')
    room = await chat.create_direct_room(alice.id, bob.id)
    a = await open_session(stub_gateway, alice, room['id'])

    keep_open = await stub_gateway.handle_frame(
        a, frame('send_message', {'roomId': room['id'], 'content': 'x' * 100}, 1))
    assert keep_open is True
    assert a.websocket.events('error') == [{'code': 'BAD_REQUEST', 'message': 'Frame too large'}]
    assert await chat.get_messages(room['id'], alice.id) == []


@pytest.mark.asyncio
async def test_status_updates_reach_other_users(make_user, stub_gateway):
    alice, bob = await make_user('alice'), await make_user('bob')
    a = await open_session(stub_gateway, alice)
    b = await open_session(stub_gateway, bob)

    await stub_gateway.handle_frame(a, frame('update_status', {'status': 'away'}, 1))
    await stub_gateway.handle_frame(a, frame('update_status', 'sleeping', 2))

    assert b.websocket.events('user_status_changed') == [{'userId': alice.id, 'status': 'away'}]
    assert a.websocket.events('user_status_changed') == []
    assert a.websocket.acks()[2]['code'] == 'VALIDATION_ERROR'


@pytest.mark.asyncio
async def test_room_lock_survives_members_leaving():
    manager = ConnectionManager()
    session = await manager.connect(StubSocket())
    manager.join(session, 7)
    lock = manager.room_lock(7)

    await lock.acquire()
    waiter = asyncio.ensure_future(manager.room_lock(7).acquire())
    await asyncio.sleep(0)
    lock.release()
    # the waiter is woken but has not re-acquired yet
    manager.leave(session, 7)
    assert manager.room_lock(7) is lock
    await waiter
    assert lock.locked()
    lock.release()

    assert manager.room_lock(8) is manager.room_lock(8)
