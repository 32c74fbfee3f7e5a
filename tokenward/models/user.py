# tokenward/models/user.py
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from tokenward.db.base import Base, utcnow


class AuthProvider(str, Enum):
    PASSWORD = "PASSWORD"
    GOOGLE = "GOOGLE"
    FACEBOOK = "FACEBOOK"
    APPLE = "APPLE"
    EMAIL_OTP = "EMAIL_OTP"
    MOBILE_OTP = "MOBILE_OTP"

    @property
    def is_delegated(self) -> bool:
        return self is not AuthProvider.PASSWORD


def new_external_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    # Internal key, never leaves the store layer
    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    external_id: Mapped[str] = mapped_column(
        String(36), unique=True, index=True, nullable=False, default=new_external_id
    )

    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    mobile_number: Mapped[Optional[str]] = mapped_column(String(20), unique=True, index=True)

    auth_provider: Mapped[str] = mapped_column(String(20), nullable=False, default=AuthProvider.PASSWORD.value)
    hashed_password: Mapped[Optional[str]] = mapped_column(String(255))
    # Subject of the upstream identity provider for delegated accounts
    provider_uid: Mapped[Optional[str]] = mapped_column(String(128), unique=True, index=True)

    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    profile_picture_url: Mapped[Optional[str]] = mapped_column(String(500))

    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_mobile_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # False means soft deleted
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_device_id: Mapped[Optional[str]] = mapped_column(String(255))
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("email IS NOT NULL OR mobile_number IS NOT NULL", name="ck_users_contact_present"),
    )

    @property
    def provider(self) -> AuthProvider:
        return AuthProvider(self.auth_provider)
