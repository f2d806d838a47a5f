from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..crud import get_user_by_id, update_profile, update_stats, search_users
from ..errors import NotFound
from ..friends import get_friendship_between, friendship_status
from ..ratelimit import rate_limit
from ..responses import ok
from ..schemas.users import MeOut, UserOut, ProfileUpdateIn, StatsIn

router = APIRouter()


@router.get('/me')
async def me(current_user: dict = Depends(get_current_user)):
    user = await get_user_by_id(current_user['id'])
    if not user:
        raise NotFound('User not found')
    return ok(MeOut.model_validate(user))


@router.patch('/me')
async def update_me(payload: ProfileUpdateIn, current_user: dict = Depends(get_current_user)):
    user = await update_profile(current_user['id'], payload.model_dump(exclude_unset=True))
    return ok(MeOut.model_validate(user))


@router.put('/me/stats')
async def sync_stats(payload: StatsIn, current_user: dict = Depends(get_current_user)):
    user = await update_stats(current_user['id'], payload.model_dump(exclude_none=True))
    return ok(MeOut.model_validate(user))


@router.get('/search', dependencies=[Depends(rate_limit('strict'))])
async def search(
    q: str = Query('', max_length=100),
    limit: int = Query(20, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
):
    results = await search_users(current_user['id'], q.strip(), limit)
    return ok(results, count=len(results))


@router.get('/{user_id}')
async def get_user(user_id: int, current_user: dict = Depends(get_current_user)):
    user = await get_user_by_id(user_id)
    if not user:
        raise NotFound('User not found')
    data = UserOut.model_validate(user).model_dump()
    edge = None
    if user_id != current_user['id']:
        edge = await get_friendship_between(current_user['id'], user_id)
    data['friendship_status'] = friendship_status(edge, current_user['id']) if user_id != current_user['id'] else 'self'
    return ok(data)
