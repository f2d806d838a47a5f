from typing import Literal
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..crud import list_activities
from ..responses import ok

router = APIRouter()


@router.get('')
async def activities(
    filter: Literal['all', 'friends'] = Query('all'),
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    rows = await list_activities(current_user['id'], filter=filter, limit=limit)
    return ok(rows, count=len(rows))
