from datetime import datetime, timezone
import pytest

from leetsocial import chat
from leetsocial.errors import Conflict, Forbidden, NotFound, ValidationFailed
from leetsocial.friends import block_user
from leetsocial.models.messages import DELETED_PLACEHOLDER


@pytest.fixture
def trio(make_user):
    async def _make():
        return await make_user('alice'), await make_user('bob'), await make_user('carol')
    return _make


@pytest.mark.asyncio
async def test_direct_room_is_reused(trio):
    alice, bob, _ = await trio()
    first = await chat.create_direct_room(alice.id, bob.id)
    second = await chat.create_direct_room(bob.id, alice.id)
    assert first['id'] == second['id']
    assert first['type'] == 'direct'
    assert first['member_ids'] == sorted([alice.id, bob.id])
    assert await chat.is_room_member(first['id'], bob.id)


@pytest.mark.asyncio
async def test_direct_room_rules(trio):
    alice, bob, _ = await trio()
    with pytest.raises(ValidationFailed):
        await chat.create_direct_room(alice.id, alice.id)
    with pytest.raises(NotFound):
        await chat.create_direct_room(alice.id, 4242)
    await block_user(bob.id, alice.id)
    with pytest.raises(Forbidden):
        await chat.create_direct_room(alice.id, bob.id)


@pytest.mark.asyncio
async def test_block_stops_existing_direct_room(trio):
    alice, bob, carol = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    group = await chat.create_group_room(alice.id, 'Study', [bob.id])
    await chat.create_message(room['id'], alice.id, content='before block')

    await block_user(bob.id, alice.id)
    for sender in (alice, bob):
        with pytest.raises(Forbidden):
            await chat.create_message(room['id'], sender.id, content='after block')
    assert [m['content'] for m in await chat.get_messages(room['id'], bob.id)] == ['before block']

    # group rooms are unaffected
    sent = await chat.create_message(group['id'], alice.id, content='still here')
    assert sent['content'] == 'still here'


@pytest.mark.asyncio
async def test_send_requires_membership(trio):
    alice, bob, carol = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    with pytest.raises(Forbidden):
        await chat.create_message(room['id'], carol.id, content='hi')
    with pytest.raises(NotFound):
        await chat.create_message(room['id'] + 50, alice.id, content='hi')
    with pytest.raises(Forbidden):
        await chat.get_messages(room['id'], carol.id)


@pytest.mark.asyncio
async def test_message_is_persisted_with_server_fields(trio):
    alice, bob, _ = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    started = datetime.now(timezone.utc).replace(microsecond=0)
    sent = await chat.create_message(room['id'], alice.id, content='hello bob')
    assert sent['id'] > 0
    assert sent['senderId'] == alice.id
    assert sent['sender']['username'] == 'alice'
    assert datetime.fromisoformat(sent['createdAt']) >= started

    history = await chat.get_messages(room['id'], bob.id)
    assert [m['id'] for m in history] == [sent['id']]
    assert history[0]['content'] == 'hello bob'
    assert datetime.fromisoformat(history[0]['createdAt']) >= started


@pytest.mark.asyncio
async def test_message_validation(trio):
    alice, bob, _ = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    other = await chat.create_group_room(alice.id, 'Other', [])
    with pytest.raises(ValidationFailed):
        await chat.create_message(room['id'], alice.id, content='   ')
    with pytest.raises(ValidationFailed):
        await chat.create_message(room['id'], alice.id, content='x' * 5001)
    with pytest.raises(ValidationFailed):
        await chat.create_message(room['id'], alice.id, content='hi', type='video')
    with pytest.raises(ValidationFailed):
        await chat.create_message(room['id'], alice.id, type='image', file_url='javascript:alert(1)')
    foreign = await chat.create_message(other['id'], alice.id, content='elsewhere')
    with pytest.raises(ValidationFailed):
        await chat.create_message(room['id'], alice.id, content='re', reply_to_id=foreign['id'])

    image = await chat.create_message(room['id'], alice.id, type='image',
                                      file_url='https://cdn.example.com/a.png', file_name='my pic.png')
    assert image['fileUrl'] == 'https://cdn.example.com/a.png'
    assert image['fileName'] == 'my_pic.png'


@pytest.mark.asyncio
async def test_history_order_and_paging(trio):
    alice, bob, _ = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    ids = []
    for i in range(5):
        sender = alice if i % 2 == 0 else bob
        ids.append((await chat.create_message(room['id'], sender.id, content=f'm{i}'))['id'])

    history = await chat.get_messages(room['id'], alice.id)
    assert [m['id'] for m in history] == ids
    assert [m['content'] for m in history] == ['m0', 'm1', 'm2', 'm3', 'm4']

    page = await chat.get_messages(room['id'], alice.id, limit=2, before_id=ids[3])
    assert [m['id'] for m in page] == ids[1:3]


@pytest.mark.asyncio
async def test_unread_counter_and_read_marker(trio):
    alice, bob, carol = await trio()
    group = await chat.create_group_room(alice.id, 'Grind', [bob.id, carol.id])
    first = await chat.create_message(group['id'], alice.id, content='one')
    await chat.create_message(group['id'], alice.id, content='two')
    last = await chat.create_message(group['id'], bob.id, content='three')

    assert (await chat.get_unread_counts(alice.id))[group['id']] == 1
    assert (await chat.get_unread_counts(bob.id))[group['id']] == 2
    assert (await chat.get_unread_counts(carol.id))[group['id']] == 3

    receipt = await chat.mark_as_read(group['id'], carol.id, last['id'])
    assert receipt['messageId'] == last['id']
    assert (await chat.get_unread_counts(carol.id))[group['id']] == 0

    # the marker never moves backwards
    receipt = await chat.mark_as_read(group['id'], carol.id, first['id'])
    assert receipt['messageId'] == last['id']

    receipt = await chat.mark_as_read(group['id'], bob.id)
    assert receipt['messageId'] == last['id']
    assert (await chat.get_unread_counts(bob.id))[group['id']] == 0

    with pytest.raises(NotFound):
        await chat.mark_as_read(group['id'], bob.id, last['id'] + 100)


@pytest.mark.asyncio
async def test_edit_and_delete_by_sender_only(trio):
    alice, bob, _ = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    msg = await chat.create_message(room['id'], alice.id, content='draft')

    with pytest.raises(Forbidden):
        await chat.edit_message(msg['id'], bob.id, 'hijack')
    with pytest.raises(Forbidden):
        await chat.delete_message(msg['id'], bob.id)

    edited = await chat.edit_message(msg['id'], alice.id, 'final')
    assert edited['content'] == 'final'
    assert edited['isEdited'] is True
    assert edited['editedAt'] is not None

    deleted = await chat.delete_message(msg['id'], alice.id)
    assert deleted['isDeleted'] is True
    assert deleted['content'] == DELETED_PLACEHOLDER

    with pytest.raises(Conflict):
        await chat.edit_message(msg['id'], alice.id, 'again')
    history = await chat.get_messages(room['id'], bob.id)
    assert history[0]['isDeleted'] is True
    assert history[0]['content'] == DELETED_PLACEHOLDER


@pytest.mark.asyncio
async def test_reactions_are_idempotent(trio):
    alice, bob, carol = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    msg = await chat.create_message(room['id'], alice.id, content='gg')

    await chat.add_reaction(msg['id'], bob.id, '🔥')
    result = await chat.add_reaction(msg['id'], bob.id, '🔥')
    assert result['roomId'] == room['id']
    assert result['reactions'] == [{'emoji': '🔥', 'count': 1, 'users': [bob.id]}]

    result = await chat.add_reaction(msg['id'], alice.id, '🔥')
    assert result['reactions'][0]['count'] == 2

    result = await chat.remove_reaction(msg['id'], bob.id, '🔥')
    assert result['reactions'] == [{'emoji': '🔥', 'count': 1, 'users': [alice.id]}]
    result = await chat.remove_reaction(msg['id'], bob.id, '🔥')
    assert result['reactions'][0]['count'] == 1

    with pytest.raises(Forbidden):
        await chat.add_reaction(msg['id'], carol.id, '👍')

    history = await chat.get_messages(room['id'], alice.id)
    assert history[0]['reactions'] == [{'emoji': '🔥', 'count': 1, 'users': [alice.id]}]


@pytest.mark.asyncio
async def test_pin_by_any_member(trio):
    alice, bob, _ = await trio()
    room = await chat.create_direct_room(alice.id, bob.id)
    msg = await chat.create_message(room['id'], alice.id, content='remember this')
    pinned = await chat.pin_message(msg['id'], bob.id, True)
    assert pinned['isPinned'] is True
    unpinned = await chat.pin_message(msg['id'], alice.id, False)
    assert unpinned['isPinned'] is False


@pytest.mark.asyncio
async def test_group_membership(trio):
    alice, bob, carol = await trio()
    with pytest.raises(ValidationFailed):
        await chat.create_group_room(alice.id, '   ', [])
    with pytest.raises(NotFound):
        await chat.create_group_room(alice.id, 'Study', [bob.id, 777])

    group = await chat.create_group_room(alice.id, 'Study', [bob.id])
    assert group['member_ids'] == sorted([alice.id, bob.id])

    with pytest.raises(Forbidden):
        await chat.invite_member(group['id'], carol.id, carol.id)
    updated = await chat.invite_member(group['id'], bob.id, carol.id)
    assert carol.id in updated['member_ids']
    with pytest.raises(Conflict):
        await chat.invite_member(group['id'], alice.id, carol.id)

    direct = await chat.create_direct_room(alice.id, bob.id)
    with pytest.raises(ValidationFailed):
        await chat.invite_member(direct['id'], alice.id, carol.id)
    assert sorted(await chat.get_room_member_ids(group['id'])) == sorted([alice.id, bob.id, carol.id])


@pytest.mark.asyncio
async def test_list_user_rooms_sorted_by_activity(trio):
    alice, bob, carol = await trio()
    direct = await chat.create_direct_room(alice.id, bob.id)
    group = await chat.create_group_room(alice.id, 'Late night', [carol.id])
    await chat.create_message(group['id'], carol.id, content='first')
    await chat.create_message(direct['id'], bob.id, content='newest')

    rooms = await chat.list_user_rooms(alice.id)
    assert [r['id'] for r in rooms] == [direct['id'], group['id']]
    assert rooms[0]['last_message']['content'] == 'newest'
    assert rooms[0]['unread_count'] == 1
    assert {m['username'] for m in rooms[1]['members']} == {'alice', 'carol'}
    assert await chat.list_user_rooms(9999) == []
