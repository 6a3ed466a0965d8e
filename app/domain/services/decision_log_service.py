"""
Decision Log - one row per scheduling decision, for audit and debugging.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.logging import get_logger
from app.db.models.decision_log import DecisionLog

logger = get_logger(__name__)


class DecisionLogService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        conversation_id: int,
        *,
        source: str,
        action: str,
        guard: str | None = None,
        reason: str | None = None,
        lead_message: str | None = None,
        response_sent: str | None = None,
        state_before: str | None = None,
        state_after: str | None = None,
        now: datetime | None = None,
    ) -> DecisionLog:
        """Added to the session; the caller commits."""
        entry = DecisionLog(
            conversation_id=conversation_id,
            source=source,
            guard=guard,
            action=action,
            reason=reason,
            lead_message=lead_message,
            response_sent=response_sent,
            state_before=state_before,
            state_after=state_after,
            created_at=now or utcnow(),
        )
        self.db.add(entry)
        return entry

    async def cleanup_older_than(self, days: int, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days)
        result = await self.db.execute(delete(DecisionLog).where(DecisionLog.created_at < cutoff))
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(
                "Old decision logs deleted",
                extra_data={"deleted": deleted, "retention_days": days},
            )
        return deleted
