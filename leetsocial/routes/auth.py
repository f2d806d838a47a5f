from fastapi import APIRouter, Depends, Form, Request

from ..auth import get_current_user
from ..crud import create_user, authenticate_user, refresh_access_token, revoke_refresh_token, revoke_session
from ..errors import Unauthorized
from ..ratelimit import rate_limit, client_address
from ..responses import ok
from ..schemas.users import RegisterIn, MeOut, RefreshIn, LogoutIn, TokenOut

router = APIRouter()


@router.post('/register', status_code=201, dependencies=[Depends(rate_limit('auth'))])
async def register(payload: RegisterIn):
    user = await create_user(payload)
    return ok(MeOut.model_validate(user))


@router.post('/login', dependencies=[Depends(rate_limit('auth'))])
async def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    device_id: str = Form(None),
):
    # username field accepts either the username or the email address
    token = await authenticate_user(
        username,
        password,
        device_id=device_id,
        user_agent=request.headers.get('user-agent'),
        ip=client_address(request),
    )
    if not token:
        raise Unauthorized('Invalid credentials', code='INVALID_CREDENTIALS')
    return ok(TokenOut(**token))


@router.post('/refresh', dependencies=[Depends(rate_limit('api'))])
async def refresh(payload: RefreshIn):
    token = await refresh_access_token(payload.refresh_token)
    if not token:
        raise Unauthorized('Invalid refresh token', code='INVALID_REFRESH_TOKEN')
    return ok(TokenOut(**token))


@router.post('/logout')
async def logout(
    payload: LogoutIn | None = None,
    current_user: dict = Depends(get_current_user),
):
    if payload and payload.refresh_token:
        await revoke_refresh_token(payload.refresh_token, user_id=current_user['id'])
    await revoke_session(current_user['sid'])
    return ok({'logged_out': True})
