# tokenward/schemas/user.py
from datetime import datetime
from typing import Optional

from pydantic import EmailStr, Field, field_validator

from tokenward.models.user import AuthProvider, User as UserModel
from tokenward.schemas.common import CamelModel

MOBILE_PATTERN = r"^\+?[0-9]{7,15}$"


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def normalize_mobile(mobile: Optional[str]) -> Optional[str]:
    if mobile is None:
        return None
    mobile = mobile.strip().replace(" ", "").replace("-", "")
    return mobile or None


class ContactMixin(CamelModel):
    email: Optional[EmailStr] = None
    mobile_number: Optional[str] = Field(None, max_length=20, pattern=MOBILE_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return normalize_email(v) if isinstance(v, str) else v

    @field_validator("mobile_number", mode="before")
    @classmethod
    def _normalize_mobile(cls, v: Optional[str]) -> Optional[str]:
        return normalize_mobile(v) if isinstance(v, str) else v


class UserRegister(ContactMixin):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    device_id: str = Field(..., min_length=1, max_length=255)
    provider: AuthProvider
    # Required iff provider is PASSWORD; enforced by the token service
    password: Optional[str] = Field(None, min_length=8, max_length=100)
    profile_picture_url: Optional[str] = Field(None, max_length=500)


class UserLogin(ContactMixin):
    password: Optional[str] = Field(None, max_length=100)
    device_id: str = Field(..., min_length=1, max_length=255)


class UserUpdate(CamelModel):
    """Profile fields only; contacts change through re-verification, not here."""

    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    profile_picture_url: Optional[str] = Field(None, max_length=500)


class User(CamelModel):
    user_id: str
    email: Optional[str] = None
    mobile_number: Optional[str] = None
    full_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    provider: AuthProvider
    is_email_verified: bool
    is_mobile_verified: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, user: UserModel) -> "User":
        return cls(
            user_id=user.external_id,
            email=user.email,
            mobile_number=user.mobile_number,
            full_name=user.full_name,
            profile_picture_url=user.profile_picture_url,
            provider=user.provider,
            is_email_verified=user.is_email_verified,
            is_mobile_verified=user.is_mobile_verified,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class SessionCount(CamelModel):
    active_sessions: int


class RevokedCount(CamelModel):
    revoked_sessions: int
