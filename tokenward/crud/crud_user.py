# tokenward/crud/crud_user.py
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from tokenward.core.exceptions import DuplicateContact
from tokenward.models.user import User, new_external_id

# Fields a user may change on their own profile
PROFILE_FIELDS = ("full_name", "profile_picture_url")


class IdentityStore:
    """
    Persistence for user identities.

    Uniqueness of external id, email, mobile number and provider uid is
    enforced by the database, never by check-then-insert. ``create`` commits
    on its own so a concurrent duplicate surfaces as ``DuplicateContact``;
    every other mutation only flushes and leaves the commit to the caller.
    """

    async def get(self, db: AsyncSession, *, id: int) -> Optional[User]:
        stmt = select(User).where(User.id == id).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    async def find_by_external_id(self, db: AsyncSession, *, external_id: str) -> Optional[User]:
        stmt = select(User).where(User.external_id == external_id).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    async def find_by_contact(
        self, db: AsyncSession, *, email: Optional[str] = None, mobile_number: Optional[str] = None
    ) -> Optional[User]:
        if email:
            stmt = select(User).where(User.email == email)
        elif mobile_number:
            stmt = select(User).where(User.mobile_number == mobile_number)
        else:
            return None
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def find_by_provider_uid(self, db: AsyncSession, *, provider_uid: str) -> Optional[User]:
        stmt = select(User).where(User.provider_uid == provider_uid).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    async def create(self, db: AsyncSession, *, candidate: User) -> User:
        if not candidate.email and not candidate.mobile_number:
            raise ValueError("A user needs an email or a mobile number")
        if not candidate.external_id:
            candidate.external_id = new_external_id()
        db.add(candidate)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.info(f"Rejected duplicate contact on user creation: {e.orig}")
            raise DuplicateContact()
        return candidate

    async def update(self, db: AsyncSession, *, user: User, patch: Dict[str, Any]) -> User:
        """Partial update of profile fields. Anything else in ``patch`` is rejected."""
        unknown = set(patch) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not updatable through profile update: {sorted(unknown)}")
        for field, value in patch.items():
            setattr(user, field, value)
        await db.flush()
        return user

    async def record_login(self, db: AsyncSession, *, user: User, device_id: Optional[str], when: datetime) -> User:
        if device_id:
            user.last_device_id = device_id
        user.last_login_at = when
        await db.flush()
        return user

    async def sync_identity(
        self,
        db: AsyncSession,
        *,
        user: User,
        email: Optional[str] = None,
        email_verified: bool = False,
        mobile_number: Optional[str] = None,
        full_name: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        provider_uid: Optional[str] = None,
    ) -> User:
        """
        Overwrite contact and profile fields with what an upstream identity
        provider asserted. Verification flags only ever move to true.
        """
        if provider_uid and user.provider_uid is None:
            user.provider_uid = provider_uid
        if email and email != user.email:
            user.email = email
        if email and email_verified:
            user.is_email_verified = True
        if mobile_number:
            if mobile_number != user.mobile_number:
                user.mobile_number = mobile_number
            # A phone number asserted upstream has been verified there
            user.is_mobile_verified = True
        if full_name:
            user.full_name = full_name
        if profile_picture_url:
            user.profile_picture_url = profile_picture_url
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            logger.warning(f"Upstream identity claims clash with another account: {e.orig}")
            raise DuplicateContact()
        return user

    async def deactivate(self, db: AsyncSession, *, user: User) -> User:
        # Same row lock SessionStore.save takes, so issuance and deactivation serialize
        await db.execute(select(User.id).where(User.id == user.id).with_for_update())
        if user.is_active:
            user.is_active = False
            await db.flush()
        return user


user_store = IdentityStore()
