"""
Claim/Lock Manager - per-conversation mutual exclusion.

try_claim is a single conditional UPDATE (lock false -> true, or a lease older
than LOCK_LEASE_SECONDS); it succeeded iff exactly one row was affected.
release is unconditional and must run on every path out of processing, which
is what the claimed() context manager guarantees.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.conversation import Conversation

logger = get_logger(__name__)


async def load_conversation(db: AsyncSession, conversation_id: int) -> Conversation | None:
    """Fresh read of a conversation, overwriting any stale copy in the identity map."""
    result = await db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class ClaimService:
    """Atomic compare-and-set on conversations.processing_lock"""

    def __init__(self, db: AsyncSession, lease_seconds: int | None = None):
        self.db = db
        self.lease_seconds = settings.LOCK_LEASE_SECONDS if lease_seconds is None else lease_seconds

    async def try_claim(self, conversation_id: int, now: datetime | None = None) -> bool:
        now = now or utcnow()
        stale_before = now - timedelta(seconds=self.lease_seconds)

        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                or_(
                    Conversation.processing_lock.is_(False),
                    Conversation.processing_lock_at < stale_before,
                ),
            )
            .values(processing_lock=True, processing_lock_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        claimed = result.rowcount == 1
        if not claimed:
            logger.info(
                "Conversation already claimed, skipping",
                extra_data={"conversation_id": conversation_id},
            )
        return claimed

    async def release(self, conversation_id: int) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(processing_lock=False, processing_lock_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    @asynccontextmanager
    async def claimed(
        self,
        conversation_id: int,
        now: datetime | None = None,
    ) -> AsyncIterator[bool]:
        """
        Yield True if the claim succeeded, False otherwise.

        The lock is released whatever happens inside the block; a failed
        session is rolled back first so the release can still be written.
        """
        is_claimed = await self.try_claim(conversation_id, now)
        if not is_claimed:
            yield False
            return

        try:
            yield True
        except BaseException:
            await self.db.rollback()
            raise
        finally:
            await self.release(conversation_id)

    async def reap_stale_locks(self, now: datetime | None = None) -> list[int]:
        """Clear locks whose lease expired (worker crashed mid-processing)."""
        now = now or utcnow()
        stale_before = now - timedelta(seconds=self.lease_seconds)
        stale_condition = (
            Conversation.processing_lock.is_(True),
            or_(
                Conversation.processing_lock_at.is_(None),
                Conversation.processing_lock_at < stale_before,
            ),
        )

        result = await self.db.execute(
            select(Conversation.id, Conversation.processing_lock_at).where(*stale_condition)
        )
        stale = result.all()
        if not stale:
            return []

        stale_ids = [row.id for row in stale]
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id.in_(stale_ids), *stale_condition)
            .values(processing_lock=False, processing_lock_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        for row in stale:
            logger.warning(
                "Released stale processing lock",
                extra_data={
                    "conversation_id": row.id,
                    "locked_since": row.processing_lock_at,
                    "lease_seconds": self.lease_seconds,
                },
            )
        return stale_ids
