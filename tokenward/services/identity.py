# tokenward/services/identity.py
"""
Delegated identity.

The upstream provider (OAuth, OTP over email or SMS) is verified elsewhere;
this module only turns its verified assertion into ``IdentityClaims``.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from tokenward.core.config import settings
from tokenward.core.exceptions import InvalidIdentity
from tokenward.models.user import AuthProvider
from tokenward.schemas.user import normalize_email, normalize_mobile

# sign_in_provider values used by common identity brokers
_PROVIDER_ALIASES = {
    "google.com": AuthProvider.GOOGLE,
    "facebook.com": AuthProvider.FACEBOOK,
    "apple.com": AuthProvider.APPLE,
    "phone": AuthProvider.MOBILE_OTP,
    "email": AuthProvider.EMAIL_OTP,
    "emaillink": AuthProvider.EMAIL_OTP,
}


class IdentityClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    provider: AuthProvider
    email: Optional[str] = None
    email_verified: bool = False
    phone_number: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _delegated_only(cls, v: AuthProvider) -> AuthProvider:
        if not v.is_delegated:
            raise ValueError("password accounts cannot be asserted upstream")
        return v


def resolve_provider(raw: Optional[str], *, has_phone: bool) -> AuthProvider:
    if not raw:
        return AuthProvider.MOBILE_OTP if has_phone else AuthProvider.EMAIL_OTP
    alias = _PROVIDER_ALIASES.get(raw.lower())
    if alias is not None:
        return alias
    try:
        return AuthProvider(raw.upper())
    except ValueError:
        raise InvalidIdentity(f"Unsupported identity provider: {raw}")


class ExternalIdentityVerifier(ABC):
    @abstractmethod
    async def verify(self, token: str) -> IdentityClaims:
        """Return the verified claims or raise InvalidIdentity."""


class SignedAssertionVerifier(ExternalIdentityVerifier):
    """Verifies an HMAC-signed assertion minted by a trusted identity broker."""

    def __init__(
        self,
        secret: Optional[str],
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        algorithm: str = "HS256",
    ):
        self.secret = secret
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm

    async def verify(self, token: str) -> IdentityClaims:
        if not self.secret:
            logger.error("External identity login attempted but EXTERNAL_IDENTITY_SECRET is not configured")
            raise InvalidIdentity("External identity verification is not configured")
        try:
            payload: Dict[str, Any] = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as e:
            logger.warning(f"Rejected external identity assertion: {e}")
            raise InvalidIdentity()
        if self.audience and "aud" not in payload:
            logger.warning("Rejected external identity assertion: audience claim missing")
            raise InvalidIdentity()

        phone = normalize_mobile(payload.get("phone_number"))
        provider = resolve_provider(
            payload.get("provider") or payload.get("sign_in_provider"),
            has_phone=phone is not None,
        )
        try:
            return IdentityClaims(
                uid=payload.get("uid") or payload.get("sub"),
                provider=provider,
                email=normalize_email(payload.get("email")),
                email_verified=bool(payload.get("email_verified", False)),
                phone_number=phone,
                name=payload.get("name"),
                picture=payload.get("picture"),
            )
        except ValidationError as e:
            logger.warning(f"External identity assertion is missing required claims: {e}")
            raise InvalidIdentity("Identity assertion is missing required claims")


identity_verifier = SignedAssertionVerifier(
    secret=settings.EXTERNAL_IDENTITY_SECRET,
    issuer=settings.EXTERNAL_IDENTITY_ISSUER,
    audience=settings.EXTERNAL_IDENTITY_AUDIENCE,
)
