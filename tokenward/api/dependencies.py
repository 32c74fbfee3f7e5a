# tokenward/api/dependencies.py
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenward.core.config import settings
from tokenward.core.tokens import TokenCodec
from tokenward.db.session import get_db
from tokenward.services.identity import ExternalIdentityVerifier, identity_verifier
from tokenward.services.rate_limit import LoginRateLimiter, login_rate_limiter
from tokenward.services.token_service import TokenService


@lru_cache
def get_token_codec() -> TokenCodec:
    # Signing parameters are frozen once per process
    return TokenCodec(settings.token_config())


def get_rate_limiter() -> LoginRateLimiter:
    return login_rate_limiter


def get_identity_verifier() -> ExternalIdentityVerifier:
    return identity_verifier


async def get_token_service(
    db: AsyncSession = Depends(get_db),
    codec: TokenCodec = Depends(get_token_codec),
    rate_limiter: LoginRateLimiter = Depends(get_rate_limiter),
) -> TokenService:
    return TokenService(db, codec, rate_limiter=rate_limiter)
