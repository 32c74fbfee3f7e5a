"""
Test fixtures and configuration for pytest.
"""
import os
import time
from typing import AsyncGenerator, Optional

# Settings are read at import time
os.environ["SECRET_KEY"] = "test-secret-key-for-tokenward"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_tokenward.db"
os.environ["EXTERNAL_IDENTITY_SECRET"] = "broker-secret"
os.environ["EXTERNAL_IDENTITY_ISSUER"] = "https://broker.test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tokenward.api.dependencies import get_identity_verifier, get_rate_limiter, get_token_codec
from tokenward.core.config import TokenConfig
from tokenward.core.tokens import TokenCodec
from tokenward.db.base import Base
from tokenward.db.session import get_db
from tokenward.models import refresh_token, user  # noqa: F401
from tokenward.services.identity import SignedAssertionVerifier
from tokenward.services.rate_limit import LoginRateLimiter
from tokenward.services.token_service import TokenService

BROKER_SECRET = "broker-secret"
BROKER_ISSUER = "https://broker.test"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite file per test, so separate sessions really are separate connections."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tokenward.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(secret_key="unit-test-signing-key", issuer="urn:tokenward:test")


@pytest.fixture
def codec(token_config) -> TokenCodec:
    return TokenCodec(token_config)


@pytest.fixture
def service(db, codec) -> TokenService:
    return TokenService(db, codec)


@pytest.fixture
def verifier() -> SignedAssertionVerifier:
    return SignedAssertionVerifier(secret=BROKER_SECRET, issuer=BROKER_ISSUER)


def make_assertion(
    uid: str,
    *,
    provider: Optional[str] = "google.com",
    email: Optional[str] = None,
    email_verified: bool = True,
    phone_number: Optional[str] = None,
    name: Optional[str] = None,
    secret: str = BROKER_SECRET,
    issuer: str = BROKER_ISSUER,
    expires_in: int = 300,
    audience: Optional[str] = None,
) -> str:
    """Mints an identity assertion the way the upstream broker does."""
    now = int(time.time())
    claims = {
        "iss": issuer,
        "sub": uid,
        "iat": now,
        "exp": now + expires_in,
        "email": email,
        "email_verified": email_verified,
        "phone_number": phone_number,
        "name": name,
    }
    if provider is not None:
        claims["provider"] = provider
    if audience is not None:
        claims["aud"] = audience
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest_asyncio.fixture
async def client(session_factory, verifier) -> AsyncGenerator[AsyncClient, None]:
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_verifier] = lambda: verifier
    app.dependency_overrides[get_rate_limiter] = lambda: LoginRateLimiter("1000/minute")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def app_codec() -> TokenCodec:
    """The codec the application signs with."""
    return get_token_codec()


@pytest.fixture
def assertion():
    return make_assertion
