"""Revocation store: the persisted list of tokens that must no longer be honored."""

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recollector.core.clock import Clock
from recollector.models.revoked_token import RevokedToken
from recollector.services.tokens import AuthError

logger = logging.getLogger(__name__)

# One lock per (user_id, token) being revoked. Entries disappear once no
# coroutine holds a reference to the lock.
_revoke_locks: "weakref.WeakValueDictionary[tuple[UUID, str], asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


class RevocationStoreUnavailableError(AuthError):
    """The revocation table could not be read or written."""

    pass


def _lock_for(user_id: UUID, token: str) -> asyncio.Lock:
    key = (user_id, token)
    lock = _revoke_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _revoke_locks[key] = lock
    return lock


class RevocationStore:
    """Read and write revoked tokens through one database session."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None):
        self.session = session
        self.clock = clock or Clock()

    async def is_revoked(self, user_id: UUID, token: str) -> bool:
        try:
            result = await self.session.execute(
                select(RevokedToken.id)
                .where(RevokedToken.user_id == user_id, RevokedToken.token == token)
                .limit(1)
            )
        except SQLAlchemyError as e:
            raise RevocationStoreUnavailableError(f"Revocation lookup failed: {e}") from e
        return result.scalar_one_or_none() is not None

    async def revoke(self, user_id: UUID, token: str, expires_at: datetime) -> None:
        """Record ``token`` as revoked for ``user_id``. Idempotent.

        The existence check, insert and commit run under a per-token lock so
        concurrent revokes in this process leave exactly one row.
        """
        lock = _lock_for(user_id, token)
        async with lock:
            if await self.is_revoked(user_id, token):
                return
            try:
                self.session.add(
                    RevokedToken(
                        user_id=user_id,
                        token=token,
                        expires_at=expires_at,
                        revoked_at=self.clock.now(),
                    )
                )
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                raise RevocationStoreUnavailableError(f"Revocation insert failed: {e}") from e

    async def sweep_expired(self, before: datetime) -> int:
        """Delete rows whose ``expires_at`` is strictly before ``before``."""
        try:
            result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                delete(RevokedToken).where(RevokedToken.expires_at < before)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RevocationStoreUnavailableError(f"Revocation sweep failed: {e}") from e
        return result.rowcount
