# tokenward/api/gateway.py
"""
Per-request authentication guard.

``auth_gateway`` runs on every request. It never rejects anything: a missing
or unusable bearer token just leaves the request unauthenticated, and the
protected endpoints reject it through ``get_current_principal``.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from tokenward.api.dependencies import get_token_service
from tokenward.core.exceptions import AuthError, InvalidToken
from tokenward.core.tokens import AccessClaims
from tokenward.models.user import User as UserModel
from tokenward.services.token_service import TokenService

bearer_scheme = HTTPBearer(auto_error=False, description="Access token issued by /auth/login")


class AuthGateway:
    async def __call__(
        self,
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        service: TokenService = Depends(get_token_service),
    ) -> Optional[AccessClaims]:
        request.state.principal = None
        if credentials is None or not credentials.credentials:
            return None
        try:
            claims = await service.validate_access(credentials.credentials)
        except AuthError as e:
            logger.debug(f"Unauthenticated request to {request.url.path}: {e.message}")
            return None
        except Exception as e:
            # Store failures end up as "unauthenticated", never as a 500 here
            logger.opt(exception=e).error(f"Access token validation failed unexpectedly on {request.url.path}")
            await service.db.rollback()
            return None
        request.state.principal = claims
        return claims


auth_gateway = AuthGateway()


async def get_current_principal(
    claims: Optional[AccessClaims] = Depends(auth_gateway),
) -> AccessClaims:
    if claims is None:
        raise InvalidToken("Not authenticated")
    return claims


async def get_current_active_user(
    principal: AccessClaims = Depends(get_current_principal),
    service: TokenService = Depends(get_token_service),
) -> UserModel:
    return await service.current_user(principal.sub)
