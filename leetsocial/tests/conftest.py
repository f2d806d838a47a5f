import os
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Configure test environment before the package reads it
TEST_DB = Path(tempfile.gettempdir()) / f'leetsocial_test_{os.getpid()}.db'
os.environ['DATABASE_URL'] = f'sqlite+aiosqlite:///{TEST_DB}'
os.environ.pop('REDIS_URL', None)
os.environ.pop('REDIS_HOST', None)
os.environ.setdefault('JWT_SECRET', 'test-secret')

from sqlalchemy import create_engine  # noqa: E402

from leetsocial.auth import create_access_token, generate_refresh_token, hash_password, hash_token  # noqa: E402
from leetsocial.gateway import gateway  # noqa: E402
from leetsocial.main import app  # noqa: E402
from leetsocial.models import AsyncSessionLocal, Base, utcnow  # noqa: E402
from leetsocial.models.session_tokens import SessionToken  # noqa: E402
from leetsocial.models.users import User  # noqa: E402

PASSWORD = 'Passw0rd!'
_password_hash = None


def _hashed_password():
    # bcrypt is slow, hash once per run
    global _password_hash
    if _password_hash is None:
        _password_hash = hash_password(PASSWORD)
    return _password_hash


async def create_test_user(username: str, **fields) -> User:
    async with AsyncSessionLocal() as session:
        user = User(
            username=username,
            email=f'{username}@example.com',
            name=fields.pop('name', username.title()),
            hashed_password=_hashed_password(),
            **fields,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def create_token(user: User) -> str:
    async with AsyncSessionLocal() as session:
        st = SessionToken(
            user_id=user.id,
            token_hash=hash_token(generate_refresh_token()),
            expires_at=utcnow() + timedelta(days=1),
        )
        session.add(st)
        await session.commit()
        return create_access_token({'id': user.id, 'username': user.username, 'sid': st.id})


@pytest.fixture(autouse=True)
def db():
    """Fresh schema and empty rate-limit counters for every test."""
    engine = create_engine(f'sqlite:///{TEST_DB}')
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    engine.dispose()
    app.state.rate_limiter.reset()
    gateway.limiter.reset()
    yield


@pytest.fixture
def make_user():
    return create_test_user


@pytest.fixture
def make_token():
    return create_token


@pytest.fixture
def auth_headers():
    async def _headers(user: User) -> dict:
        return {'Authorization': f'Bearer {await create_token(user)}'}
    return _headers


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac
