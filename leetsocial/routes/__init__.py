from fastapi import APIRouter, Depends
from ..ratelimit import rate_limit
from .auth import router as auth_router
from .users import router as users_router
from .friends import router as friends_router
from .rooms import router as rooms_router
from .activities import router as activities_router
from .leaderboard import router as leaderboard_router

api_limit = [Depends(rate_limit('api'))]

router = APIRouter()
router.include_router(auth_router, prefix='/auth', tags=['auth'])
router.include_router(users_router, prefix='/users', tags=['users'], dependencies=api_limit)
router.include_router(friends_router, prefix='/friends', tags=['friends'], dependencies=api_limit)
router.include_router(rooms_router, prefix='/rooms', tags=['rooms'], dependencies=api_limit)
router.include_router(activities_router, prefix='/activities', tags=['activities'], dependencies=api_limit)
router.include_router(leaderboard_router, prefix='/leaderboard', tags=['leaderboard'], dependencies=api_limit)
