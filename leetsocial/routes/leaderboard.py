from typing import Literal
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..crud import leaderboard as load_leaderboard
from ..responses import ok

router = APIRouter()


@router.get('')
async def leaderboard(
    scope: Literal['global', 'friends'] = Query('global'),
    limit: int = Query(100, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    rows = await load_leaderboard(current_user['id'], scope=scope, limit=limit)
    return ok(rows, scope=scope, count=len(rows))
