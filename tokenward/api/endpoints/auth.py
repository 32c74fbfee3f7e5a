# tokenward/api/endpoints/auth.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.security import HTTPAuthorizationCredentials

from tokenward.api.dependencies import get_identity_verifier, get_token_service
from tokenward.api.gateway import bearer_scheme, get_current_active_user
from tokenward.core.exceptions import InvalidToken
from tokenward.models.user import User as UserModel
from tokenward.schemas.common import ApiResponse
from tokenward.schemas.token import (
    ExternalLoginRequest,
    RefreshTokenRequest,
    Token,
    TokenValidation,
    ValidateTokenRequest,
)
from tokenward.schemas.user import RevokedCount, User as UserSchema, UserLogin, UserRegister
from tokenward.services.identity import ExternalIdentityVerifier
from tokenward.services.token_service import (
    ExternalCredentials,
    PasswordCredentials,
    TokenPair,
    TokenService,
)

router = APIRouter()


def _token_payload(pair: TokenPair) -> Token:
    return Token(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=UserSchema.from_model(pair.user),
    )


@router.post("/register", response_model=ApiResponse[UserSchema], status_code=status.HTTP_201_CREATED)
async def register(
    payload: UserRegister,
    service: TokenService = Depends(get_token_service),
):
    """
    Creates an account. ``password`` is required for PASSWORD accounts and
    rejected for delegated ones; at least one of email or mobile number is
    required.
    """
    user = await service.register(payload)
    return ApiResponse[UserSchema].ok("User registered successfully", UserSchema.from_model(user))


@router.post("/login", response_model=ApiResponse[Token])
async def login(
    payload: UserLogin,
    service: TokenService = Depends(get_token_service),
):
    credentials = PasswordCredentials(
        password=payload.password,
        device_id=payload.device_id,
        email=payload.email,
        mobile_number=payload.mobile_number,
    )
    pair = await service.login(credentials)
    return ApiResponse[Token].ok("Login successful", _token_payload(pair))


@router.post("/external", response_model=ApiResponse[Token])
async def external_login(
    payload: ExternalLoginRequest,
    service: TokenService = Depends(get_token_service),
    verifier: ExternalIdentityVerifier = Depends(get_identity_verifier),
):
    """
    Delegated login: exchanges an assertion from the upstream identity
    broker for a token pair, creating or linking the account on first use.
    Contact and profile fields are overwritten from the assertion every time.
    """
    claims = await verifier.verify(payload.id_token)
    pair = await service.login(ExternalCredentials(claims=claims, device_id=payload.device_id))
    return ApiResponse[Token].ok("Login successful", _token_payload(pair))


@router.post("/refresh", response_model=ApiResponse[Token])
async def refresh_token(
    payload: RefreshTokenRequest,
    service: TokenService = Depends(get_token_service),
):
    pair = await service.refresh(payload.refresh_token)
    return ApiResponse[Token].ok("Token refreshed successfully", _token_payload(pair))


@router.post("/logout", response_model=ApiResponse[None])
async def logout(
    payload: RefreshTokenRequest,
    current_user: UserModel = Depends(get_current_active_user),
    service: TokenService = Depends(get_token_service),
):
    """Revokes one refresh session of the caller. Already issued access tokens stay valid until they expire."""
    await service.revoke(payload.refresh_token, owner=current_user)
    return ApiResponse[None].ok("Logged out successfully")


@router.post("/logout-all", response_model=ApiResponse[RevokedCount])
async def logout_all(
    current_user: UserModel = Depends(get_current_active_user),
    service: TokenService = Depends(get_token_service),
):
    count = await service.revoke_all(current_user)
    return ApiResponse[RevokedCount].ok("All sessions revoked", RevokedCount(revoked_sessions=count))


async def _validate(token: Optional[str], service: TokenService) -> ApiResponse[TokenValidation]:
    if not token:
        raise InvalidToken("Access token is required")
    claims = await service.validate_access(token)
    result = TokenValidation(
        is_valid=True,
        subject_id=claims.sub,
        email=claims.email,
        mobile=claims.mobile_number,
        issued_at=claims.iat,
        expires_at=claims.exp,
    )
    return ApiResponse[TokenValidation].ok("Token is valid", result)


@router.get("/validate", response_model=ApiResponse[TokenValidation])
async def validate_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    service: TokenService = Depends(get_token_service),
):
    """For downstream services: checks the bearer access token and its owner."""
    return await _validate(credentials.credentials if credentials else None, service)


@router.post("/validate", response_model=ApiResponse[TokenValidation])
async def validate_token_body(
    payload: Optional[ValidateTokenRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    service: TokenService = Depends(get_token_service),
):
    token = payload.access_token if payload and payload.access_token else None
    if token is None and credentials is not None:
        token = credentials.credentials
    return await _validate(token, service)


@router.get("/health", response_model=ApiResponse[None])
async def health():
    return ApiResponse[None].ok("Auth service is running")
