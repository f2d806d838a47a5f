from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..chat import (
    create_direct_room,
    create_group_room,
    invite_member,
    list_user_rooms,
    get_messages,
    mark_as_read,
    get_unread_counts,
)
from ..responses import ok
from ..schemas.messages import DirectRoomIn, GroupRoomIn, MemberIn, ReadIn

router = APIRouter()


@router.get('')
async def list_rooms(current_user: dict = Depends(get_current_user)):
    rooms = await list_user_rooms(current_user['id'])
    return ok(rooms, count=len(rooms))


@router.get('/unread')
async def unread(current_user: dict = Depends(get_current_user)):
    counts = await get_unread_counts(current_user['id'])
    return ok({str(room_id): count for room_id, count in counts.items()}, total=sum(counts.values()))


@router.post('/direct')
async def direct_room(payload: DirectRoomIn, current_user: dict = Depends(get_current_user)):
    return ok(await create_direct_room(current_user['id'], payload.user_id))


@router.post('/group', status_code=201)
async def group_room(payload: GroupRoomIn, current_user: dict = Depends(get_current_user)):
    room = await create_group_room(current_user['id'], payload.name, payload.member_ids, payload.description)
    return ok(room)


@router.post('/{room_id}/members')
async def add_member(room_id: int, payload: MemberIn, current_user: dict = Depends(get_current_user)):
    return ok(await invite_member(room_id, current_user['id'], payload.user_id))


@router.get('/{room_id}/messages')
async def messages(
    room_id: int,
    limit: int = Query(50, ge=1, le=100),
    before_id: int | None = Query(None, gt=0),
    current_user: dict = Depends(get_current_user),
):
    history = await get_messages(room_id, current_user['id'], limit=limit, before_id=before_id)
    return ok(history, count=len(history))


@router.post('/{room_id}/read')
async def read(room_id: int, payload: ReadIn | None = None, current_user: dict = Depends(get_current_user)):
    message_id = payload.message_id if payload else None
    return ok(await mark_as_read(room_id, current_user['id'], message_id))
