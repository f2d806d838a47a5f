from typing import Literal
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..crud import get_users_by_ids
from ..friends import (
    send_friend_request,
    accept_friend_request,
    reject_friend_request,
    cancel_friend_request,
    remove_friend,
    block_user,
    get_user_friends,
    get_pending_friend_requests,
    get_sent_friend_requests,
    get_friendship_between,
    friendship_status,
)
from ..ratelimit import rate_limit
from ..responses import ok
from ..schemas.friendships import (
    FriendRequestIn,
    FriendshipOut,
    FriendRequestOut,
    FriendOut,
    FriendshipStatusOut,
)
from ..schemas.users import UserBrief

router = APIRouter()


@router.get('')
async def list_friends(current_user: dict = Depends(get_current_user)):
    friends = await get_user_friends(current_user['id'])
    users = await get_users_by_ids(f['friend_id'] for f in friends)
    data = [
        FriendOut(friendship_id=f['friendship_id'], since=f['since'], user=UserBrief.model_validate(users[f['friend_id']]))
        for f in friends if f['friend_id'] in users
    ]
    return ok(data, count=len(data))


@router.get('/requests')
async def list_requests(
    type: Literal['received', 'sent'] = Query('received'),
    current_user: dict = Depends(get_current_user),
):
    if type == 'sent':
        requests = await get_sent_friend_requests(current_user['id'])
    else:
        requests = await get_pending_friend_requests(current_user['id'])
    users = await get_users_by_ids([r.requester_id for r in requests] + [r.addressee_id for r in requests])
    data = []
    for r in requests:
        out = FriendRequestOut.model_validate(r)
        out.requester = UserBrief.model_validate(users[r.requester_id]) if r.requester_id in users else None
        out.addressee = UserBrief.model_validate(users[r.addressee_id]) if r.addressee_id in users else None
        data.append(out)
    return ok(data, count=len(data))


@router.post('/requests', status_code=201, dependencies=[Depends(rate_limit('strict'))])
async def create_request(payload: FriendRequestIn, current_user: dict = Depends(get_current_user)):
    fr = await send_friend_request(current_user['id'], payload.addressee_id)
    return ok(FriendshipOut.model_validate(fr))


@router.post('/requests/{request_id}/accept')
async def accept_request(request_id: int, current_user: dict = Depends(get_current_user)):
    fr = await accept_friend_request(request_id, current_user['id'])
    return ok(FriendshipOut.model_validate(fr))


@router.post('/requests/{request_id}/reject')
async def reject_request(request_id: int, current_user: dict = Depends(get_current_user)):
    fr = await reject_friend_request(request_id, current_user['id'])
    return ok(FriendshipOut.model_validate(fr))


@router.delete('/requests/{request_id}')
async def cancel_request(request_id: int, current_user: dict = Depends(get_current_user)):
    await cancel_friend_request(request_id, current_user['id'])
    return ok({'cancelled': True})


@router.delete('/{friend_id}')
async def unfriend(friend_id: int, current_user: dict = Depends(get_current_user)):
    await remove_friend(current_user['id'], friend_id)
    return ok({'removed': True})


@router.post('/{user_id}/block')
async def block(user_id: int, current_user: dict = Depends(get_current_user)):
    edge = await block_user(current_user['id'], user_id)
    return ok(FriendshipOut.model_validate(edge))


@router.get('/{user_id}/status')
async def status(user_id: int, current_user: dict = Depends(get_current_user)):
    edge = await get_friendship_between(current_user['id'], user_id)
    return ok(FriendshipStatusOut(
        status=friendship_status(edge, current_user['id']),
        friendship_id=edge.id if edge else None,
        is_requester=bool(edge and edge.requester_id == current_user['id']),
    ))
