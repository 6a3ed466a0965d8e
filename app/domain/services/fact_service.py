"""
Fact Store - key/value facts per conversation, latest write wins
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.logging import get_logger
from app.db.models.lead_fact import LeadFact

logger = get_logger(__name__)

# ערכים שה-oracle מחזיר כשאין לו באמת עובדה
_EMPTY_VALUES = {"", "null", "none", "unknown", "n/a"}
_FALSE_VALUES = {"false", "no", "0"}

PITCH_ACCEPTED = "pitch_accepted"
EMAIL = "email"
BREAKUP_SENT_AT = "breakup_sent_at"
DOCUMENTS_SYNC_REQUESTED_AT = "documents_sync_requested_at"


def is_meaningful(value: Any) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() not in _EMPTY_VALUES


def is_truthy_fact(value: str | None) -> bool:
    return is_meaningful(value) and str(value).strip().lower() not in _FALSE_VALUES


class FactService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_facts(self, conversation_id: int) -> dict[str, str]:
        result = await self.db.execute(
            select(LeadFact).where(LeadFact.conversation_id == conversation_id)
        )
        return {fact.fact_key: fact.fact_value for fact in result.scalars().all()}

    async def upsert(
        self,
        conversation_id: int,
        key: str,
        value: Any,
        now: datetime | None = None,
    ) -> LeadFact:
        """Insert or overwrite one fact. Added to the session; the caller commits."""
        now = now or utcnow()
        result = await self.db.execute(
            select(LeadFact).where(
                LeadFact.conversation_id == conversation_id,
                LeadFact.fact_key == key,
            )
        )
        fact = result.scalar_one_or_none()
        if fact is None:
            fact = LeadFact(
                conversation_id=conversation_id,
                fact_key=key,
                fact_value=str(value),
                collected_at=now,
            )
            self.db.add(fact)
        else:
            fact.fact_value = str(value)
            fact.collected_at = now
        return fact

    async def upsert_many(
        self,
        conversation_id: int,
        facts: Mapping[str, Any] | None,
        now: datetime | None = None,
    ) -> list[str]:
        """Upsert extracted facts, skipping empty / "null" / "unknown" values. Returns stored keys."""
        stored: list[str] = []
        for key, value in (facts or {}).items():
            if not key or not is_meaningful(value):
                continue
            await self.upsert(conversation_id, key, value, now)
            stored.append(key)

        if stored:
            logger.debug(
                "Facts stored",
                extra_data={"conversation_id": conversation_id, "keys": stored},
            )
        return stored
