# tokenward/services/token_service.py
"""
Token lifecycle: registration, authentication, issuance, refresh, revocation
and access-token validation.

A token pair has no stored state of its own. Whether it is usable is derived
on every call from the access token's expiry (CPU only) and from the refresh
session row, which is always read fresh.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tokenward.core.exceptions import (
    DuplicateContact,
    FieldValidationError,
    InactiveAccount,
    InvalidCredentials,
    InvalidIdentity,
    InvalidToken,
    TokenDecodeError,
    UserNotFound,
)
from tokenward.core.security import get_password_hash_async, verify_password_async
from tokenward.core.tokens import AccessClaims, RefreshClaims, TokenCodec, TokenKind
from tokenward.crud.crud_refresh_token import SessionStore, session_store
from tokenward.crud.crud_user import IdentityStore, user_store
from tokenward.models.user import AuthProvider, User
from tokenward.schemas.user import UserRegister, UserUpdate
from tokenward.services.identity import IdentityClaims
from tokenward.services.rate_limit import LoginRateLimiter

# First delegated logins racing on the same provider uid
RESOLVE_ATTEMPTS = 3


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    user: User


@dataclass(frozen=True)
class PasswordCredentials:
    password: Optional[str]
    device_id: Optional[str] = None
    email: Optional[str] = None
    mobile_number: Optional[str] = None


@dataclass(frozen=True)
class ExternalCredentials:
    """An identity already verified by an ExternalIdentityVerifier."""

    claims: IdentityClaims
    device_id: Optional[str] = None


Credentials = Union[PasswordCredentials, ExternalCredentials]


def _naive(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class TokenService:
    def __init__(
        self,
        db: AsyncSession,
        codec: TokenCodec,
        rate_limiter: Optional[LoginRateLimiter] = None,
        identities: IdentityStore = user_store,
        sessions: SessionStore = session_store,
    ):
        self.db = db
        self.codec = codec
        self.config = codec.config
        self.rate_limiter = rate_limiter
        self.identities = identities
        self.sessions = sessions

    @property
    def access_expires_in(self) -> int:
        return int(self.config.access_ttl.total_seconds())

    # --- Registration ---

    async def register(self, payload: UserRegister) -> User:
        errors: Dict[str, str] = {}
        if not payload.email and not payload.mobile_number:
            errors["email"] = "Either email or mobile number is required"
        if payload.provider is AuthProvider.PASSWORD and not payload.password:
            errors["password"] = "Password is required for PASSWORD accounts"
        elif payload.provider.is_delegated and payload.password:
            errors["password"] = f"Password is not accepted for {payload.provider.value} accounts"
        if errors:
            raise FieldValidationError(errors)

        hashed_password = None
        if payload.password:
            hashed_password = await get_password_hash_async(payload.password)

        candidate = User(
            email=payload.email,
            mobile_number=payload.mobile_number,
            auth_provider=payload.provider.value,
            hashed_password=hashed_password,
            full_name=payload.full_name,
            profile_picture_url=payload.profile_picture_url,
            last_device_id=payload.device_id,
        )
        user = await self.identities.create(self.db, candidate=candidate)
        logger.info(f"Registered user {user.external_id} ({user.auth_provider})")
        return user

    # --- Authentication ---

    async def authenticate(self, credentials: Credentials) -> User:
        if isinstance(credentials, ExternalCredentials):
            return await self._authenticate_delegated(credentials.claims)
        return await self._authenticate_password(credentials)

    def _check_rate_limit(self, identifier: str) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.check(identifier)

    async def _authenticate_password(self, credentials: PasswordCredentials) -> User:
        email, mobile = credentials.email, credentials.mobile_number
        identifier = email or mobile
        if not identifier:
            raise FieldValidationError({"email": "Either email or mobile number is required"})
        self._check_rate_limit(identifier)

        user = await self.identities.find_by_contact(self.db, email=email, mobile_number=mobile)
        if user is not None and email and mobile and user.mobile_number != mobile:
            user = None
        if user is None or user.provider is not AuthProvider.PASSWORD or not user.hashed_password:
            logger.warning(f"Failed login for {identifier!r}: unknown contact or not a password account")
            raise InvalidCredentials()
        if not credentials.password or not await verify_password_async(credentials.password, user.hashed_password):
            logger.warning(f"Failed login for user {user.external_id}: wrong password")
            raise InvalidCredentials()
        if not user.is_active:
            logger.warning(f"Login attempt on inactive account {user.external_id}")
            raise InvalidCredentials("Account is not active")
        return user

    async def _authenticate_delegated(self, claims: IdentityClaims) -> User:
        if not claims.email and not claims.phone_number:
            raise InvalidIdentity("Identity assertion carries neither email nor phone number")
        self._check_rate_limit(claims.uid)

        for attempt in range(1, RESOLVE_ATTEMPTS + 1):
            user = await self.identities.find_by_provider_uid(self.db, provider_uid=claims.uid)
            if user is None:
                user = await self._find_linkable(claims)
            if user is None:
                try:
                    user = await self.identities.create(self.db, candidate=self._user_from_claims(claims))
                except DuplicateContact:
                    # Another request created the row first; resolve it on the next pass
                    if attempt == RESOLVE_ATTEMPTS:
                        raise
                    logger.info(f"Conflict creating delegated user for uid {claims.uid}, retrying ({attempt})")
                    continue
                logger.info(f"Created delegated user {user.external_id} ({claims.provider.value})")
                return user

            if not user.is_active:
                logger.warning(f"Delegated login on inactive account {user.external_id}")
                raise InvalidCredentials("Account is not active")
            return await self.identities.sync_identity(
                self.db,
                user=user,
                email=claims.email,
                email_verified=claims.email_verified,
                mobile_number=claims.phone_number,
                full_name=claims.name,
                profile_picture_url=claims.picture,
                provider_uid=claims.uid,
            )
        raise DuplicateContact()

    async def _find_linkable(self, claims: IdentityClaims) -> Optional[User]:
        """
        A row registered through /register by a delegated client has the
        provider tag but no provider uid yet. Any other owner of the same
        contact is a clash.
        """
        existing = None
        if claims.email:
            existing = await self.identities.find_by_contact(self.db, email=claims.email)
        if existing is None and claims.phone_number:
            existing = await self.identities.find_by_contact(self.db, mobile_number=claims.phone_number)
        if existing is None:
            return None
        if existing.provider_uid is None and existing.auth_provider == claims.provider.value:
            logger.info(f"Linking user {existing.external_id} to upstream uid {claims.uid}")
            return existing
        logger.warning(f"Upstream identity {claims.uid} clashes with contact of user {existing.external_id}")
        raise DuplicateContact()

    @staticmethod
    def _user_from_claims(claims: IdentityClaims) -> User:
        return User(
            email=claims.email,
            mobile_number=claims.phone_number,
            auth_provider=claims.provider.value,
            provider_uid=claims.uid,
            full_name=claims.name,
            profile_picture_url=claims.picture,
            is_email_verified=bool(claims.email and claims.email_verified),
            is_mobile_verified=claims.phone_number is not None,
        )

    # --- Issuance ---

    def _issue_access(self, user: User, now: datetime) -> str:
        return self.codec.issue(
            TokenKind.ACCESS,
            user.external_id,
            claims={"email": user.email, "mobile_number": user.mobile_number, "name": user.full_name},
            now=now,
        )

    async def issue_pair(self, user: User, device_id: Optional[str] = None) -> TokenPair:
        """The only path, besides rotation, that creates a refresh session."""
        now = datetime.now(timezone.utc)
        access_token = self._issue_access(user, now)
        refresh_token = self.codec.issue(TokenKind.REFRESH, user.external_id, now=now)
        await self.sessions.save(
            self.db,
            user_id=user.id,
            token=refresh_token,
            expires_at=_naive(now) + self.config.refresh_ttl,
            device_id=device_id,
        )
        await self.identities.record_login(self.db, user=user, device_id=device_id, when=_naive(now))
        await self.db.commit()
        logger.info(f"Issued token pair for user {user.external_id} (device {device_id})")
        return TokenPair(access_token, refresh_token, self.access_expires_in, user)

    async def login(self, credentials: Credentials) -> TokenPair:
        user = await self.authenticate(credentials)
        try:
            return await self.issue_pair(user, device_id=credentials.device_id)
        except (InactiveAccount, UserNotFound):
            await self.db.rollback()
            raise InvalidCredentials("Account is not active")

    # --- Refresh ---

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.decode(refresh_token)
        except TokenDecodeError as e:
            logger.warning(f"Refresh rejected: {e.message}")
            raise
        if not isinstance(claims, RefreshClaims):
            logger.warning(f"Refresh rejected: {claims.token_type} token presented for subject {claims.sub}")
            raise InvalidToken("Not a refresh token")

        now = datetime.now(timezone.utc)
        session = await self.sessions.find_by_token(self.db, token=refresh_token)
        if session is None or not self.sessions.is_valid(session, _naive(now)):
            logger.warning(f"Refresh rejected for subject {claims.sub}: session unknown, revoked or expired")
            raise InvalidToken()
        user = await self.identities.get(self.db, id=session.user_id)
        if user is None or user.external_id != claims.sub or not user.is_active:
            logger.warning(f"Refresh rejected for subject {claims.sub}: owner missing or inactive")
            raise InvalidToken()

        access_token = self._issue_access(user, now)
        if not self.config.rotate_refresh_tokens:
            logger.info(f"Refreshed access token for user {user.external_id}")
            return TokenPair(access_token, refresh_token, self.access_expires_in, user)

        # Revoke-old and save-new commit together; a concurrent rotation of the
        # same token loses the compare-and-set
        if not await self.sessions.revoke_if_valid(self.db, token=refresh_token, now=_naive(now)):
            await self.db.rollback()
            logger.warning(f"Refresh rejected for subject {claims.sub}: token already rotated or revoked")
            raise InvalidToken()
        new_refresh_token = self.codec.issue(TokenKind.REFRESH, user.external_id, now=now)
        try:
            await self.sessions.save(
                self.db,
                user_id=user.id,
                token=new_refresh_token,
                expires_at=_naive(now) + self.config.refresh_ttl,
                device_id=session.device_id,
            )
        except (InactiveAccount, UserNotFound):
            await self.db.rollback()
            logger.warning(f"Refresh rejected for subject {claims.sub}: account deactivated during rotation")
            raise InvalidToken()
        await self.db.commit()
        logger.info(f"Rotated refresh token for user {user.external_id}")
        return TokenPair(access_token, new_refresh_token, self.access_expires_in, user)

    # --- Revocation ---

    async def revoke(self, refresh_token: str, owner: Optional[User] = None) -> bool:
        """
        Idempotent logout. Returns whether this call revoked the session;
        revoking an already revoked session is still a success.
        """
        session = await self.sessions.find_by_token(self.db, token=refresh_token)
        if session is None:
            logger.warning("Revoke rejected: unknown refresh token")
            raise InvalidToken()
        if owner is not None and session.user_id != owner.id:
            logger.warning(f"Revoke rejected: refresh token does not belong to user {owner.external_id}")
            raise InvalidToken()
        revoked = await self.sessions.revoke(self.db, token=refresh_token)
        await self.db.commit()
        if revoked:
            logger.info(f"Revoked refresh session {session.id} of user id {session.user_id}")
        return revoked

    async def revoke_all(self, user: User) -> int:
        count = await self.sessions.revoke_all_for_user(self.db, user_id=user.id)
        await self.db.commit()
        logger.info(f"Revoked {count} refresh session(s) of user {user.external_id}")
        return count

    # --- Validation ---

    async def validate_access(self, access_token: str) -> AccessClaims:
        try:
            claims = self.codec.decode(access_token)
        except TokenDecodeError as e:
            logger.warning(f"Access token rejected: {e.message}")
            raise
        if not isinstance(claims, AccessClaims):
            logger.warning(f"Access token rejected: {claims.token_type} token presented for subject {claims.sub}")
            raise InvalidToken("Not an access token")
        await self.current_user(claims.sub)
        return claims

    async def current_user(self, external_id: str) -> User:
        user = await self.identities.find_by_external_id(self.db, external_id=external_id)
        if user is None or not user.is_active:
            logger.warning(f"Token subject {external_id} is missing or inactive")
            raise InvalidToken()
        return user

    # --- Account ---

    async def update_profile(self, user: User, payload: UserUpdate) -> User:
        patch: Dict[str, Any] = payload.model_dump(exclude_unset=True)
        if not patch:
            return user
        await self.identities.update(self.db, user=user, patch=patch)
        await self.db.commit()
        logger.info(f"Updated profile of user {user.external_id}: {sorted(patch)}")
        return user

    async def deactivate(self, user: User) -> int:
        """Soft delete plus bulk revoke, committed together."""
        await self.identities.deactivate(self.db, user=user)
        count = await self.sessions.revoke_all_for_user(self.db, user_id=user.id)
        await self.db.commit()
        logger.info(f"Deactivated user {user.external_id}, revoked {count} refresh session(s)")
        return count

    async def active_session_count(self, user: User) -> int:
        return await self.sessions.count_active_for_user(self.db, user_id=user.id)
