# tokenward/crud/crud_refresh_token.py
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from tokenward.core.exceptions import InactiveAccount, UserNotFound
from tokenward.core.security import hash_token
from tokenward.db.base import utcnow
from tokenward.models.refresh_token import RefreshSession
from tokenward.models.user import User


class SessionStore:
    """
    Refresh sessions keyed by the digest of the signed token.

    Only ``is_revoked``/``revoked_at`` ever change after a row is written.
    Mutations flush; the caller owns the transaction.
    """

    async def save(
        self,
        db: AsyncSession,
        *,
        user_id: int,
        token: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
    ) -> RefreshSession:
        # Serializes with IdentityStore.deactivate + revoke_all_for_user: a session
        # either lands before the sweep (and gets revoked) or sees the inactive owner
        stmt = (
            select(User.is_active)
            .where(User.id == user_id)
            .with_for_update()
        )
        result = await db.execute(stmt)
        is_active = result.scalar_one_or_none()
        if is_active is None:
            raise UserNotFound()
        if not is_active:
            raise InactiveAccount()

        db_session = RefreshSession(
            user_id=user_id,
            token_hash=hash_token(token),
            device_id=device_id,
            expires_at=expires_at,
            is_revoked=False,
        )
        db.add(db_session)
        await db.flush()
        return db_session

    async def find_by_token(self, db: AsyncSession, *, token: str) -> Optional[RefreshSession]:
        # populate_existing: revocation must be observed even if this session
        # already holds the row in its identity map
        stmt = (
            select(RefreshSession)
            .where(RefreshSession.token_hash == hash_token(token))
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    def is_valid(self, session: RefreshSession, now: Optional[datetime] = None) -> bool:
        return session.is_valid(now or utcnow())

    async def revoke(self, db: AsyncSession, *, token: str) -> bool:
        """Idempotent. Returns True only when this call flipped the flag."""
        stmt = (
            update(RefreshSession)
            .where(RefreshSession.token_hash == hash_token(token), RefreshSession.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    async def revoke_if_valid(self, db: AsyncSession, *, token: str, now: datetime) -> bool:
        """
        Compare-and-set used by rotation: revokes the session only if it is
        still valid at ``now``. Of two concurrent rotations of the same token
        exactly one sees True.
        """
        stmt = (
            update(RefreshSession)
            .where(
                RefreshSession.token_hash == hash_token(token),
                RefreshSession.is_revoked == False,  # noqa: E712
                RefreshSession.expires_at > now,
            )
            .values(is_revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def revoke_all_for_user(self, db: AsyncSession, *, user_id: int) -> int:
        stmt = (
            update(RefreshSession)
            .where(RefreshSession.user_id == user_id, RefreshSession.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount

    async def count_active_for_user(self, db: AsyncSession, *, user_id: int) -> int:
        stmt = select(func.count(RefreshSession.id)).where(
            RefreshSession.user_id == user_id,
            RefreshSession.is_revoked == False,  # noqa: E712
            RefreshSession.expires_at > utcnow(),
        )
        result = await db.execute(stmt)
        return result.scalar_one()

    async def prune_expired(self, db: AsyncSession, *, retention: timedelta) -> int:
        """Deletes sessions that expired more than ``retention`` ago. Retention job only."""
        cutoff = utcnow() - retention
        stmt = delete(RefreshSession).where(RefreshSession.expires_at <= cutoff)
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount


session_store = SessionStore()
