import os
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
import secrets
import hashlib
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import select

from .errors import Unauthorized
from .models import AsyncSessionLocal, as_utc
from .models.users import User
from .models.session_tokens import SessionToken

# Prefer JWT_SECRET but support legacy JWT_SECRET_KEY for compatibility
SECRET = os.getenv('JWT_SECRET') or os.getenv('JWT_SECRET_KEY', 'devsecret')
ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', str(60 * 24)))

REFRESH_TOKEN_TTL_DAYS = int(os.getenv('REFRESH_TOKEN_TTL_DAYS', '30'))

pwd_ctx = CryptContext(schemes=['bcrypt'], deprecated='auto')
bearer = HTTPBearer(auto_error=False)

def generate_refresh_token() -> str:
    # 256-bit random token, URL-safe
    return secrets.token_urlsafe(48)

def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()

def hash_password(password: str) -> str:
    return pwd_ctx.hash(password)

def verify_password(password: str, hashed: str) -> bool:
    return pwd_ctx.verify(password, hashed)

def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({'exp': expire})
    encoded = jwt.encode(to_encode, SECRET, algorithm=ALGORITHM)
    return encoded

def decode_token(token: str):
    try:
        payload = jwt.decode(token, SECRET, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None

async def resolve_token(token: str | None):
    """Validate an access token against the session store.

    Returns ``{'id', 'username', 'sid'}`` or None when the token is bad, its
    session was revoked or expired, or the account is gone or inactive.
    """
    if not token:
        return None
    payload = decode_token(token)
    if not payload or 'id' not in payload or 'sid' not in payload:
        return None
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(SessionToken).where(SessionToken.id == payload['sid']))
        st = q.scalars().first()
        if not st or st.user_id != payload['id'] or st.revoked_at is not None:
            return None
        if as_utc(st.expires_at) <= datetime.now(timezone.utc):
            return None
        user = await session.get(User, st.user_id)
        if not user or not user.is_active:
            return None
        return {'id': user.id, 'username': user.username, 'sid': st.id}

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    user = await resolve_token(credentials.credentials if credentials else None)
    if not user:
        raise Unauthorized()
    return user
