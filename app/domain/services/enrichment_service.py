"""
Enrichment trigger - asks the external analysis job to (re)sync the lead's
documents. Fire-and-forget: the job runs in a Celery worker and writes its
results back to conversations.strategy_context on its own schedule.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.logging import get_logger
from app.domain.services.fact_service import DOCUMENTS_SYNC_REQUESTED_AT, FactService

logger = get_logger(__name__)


class EnrichmentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def trigger(self, conversation_id: int, reason: str, now: datetime | None = None) -> None:
        """Record the request as a fact and enqueue the job. Never waits for the job."""
        now = now or utcnow()
        await FactService(self.db).upsert(conversation_id, DOCUMENTS_SYNC_REQUESTED_AT, now.isoformat(), now)

        # ייבוא מקומי - מונע import מעגלי בין השירותים ל-workers
        from app.workers.tasks import sync_lead_documents

        try:
            sync_lead_documents.delay(conversation_id, reason)
        except Exception as exc:
            # broker לא זמין - הבקשה נשמרה כעובדה, הסנכרון יבוקש שוב בהחלטה הבאה
            logger.error(
                "Failed to enqueue document sync",
                extra_data={"conversation_id": conversation_id, "error": str(exc)},
            )
            return

        logger.info(
            "Document sync requested",
            extra_data={"conversation_id": conversation_id, "reason": reason},
        )
