"""
Nudge Scheduler Loop - re-engages leads that replied before and went quiet.

The escalating idle threshold is part of the WHERE clause (a CASE over
NUDGE_SCHEDULE_SECONDS) so the batch limit only counts leads that are due.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import is_within_business_hours, utcnow
from app.core.config import settings
from app.core.logging import bind_conversation, get_logger, log_async_operation
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection
from app.domain.services.backoff import idle_past_schedule, is_nudge_due
from app.domain.services.claim_service import ClaimService, load_conversation
from app.domain.services.lead_agent_service import AgentResult, LeadAgent
from app.domain.services.reply_loop_service import latest_message_column
from app.state_machine.states import LeadState

logger = get_logger(__name__)


class NudgeLoop:
    def __init__(
        self,
        db: AsyncSession,
        *,
        agent: LeadAgent | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.sleep = sleep
        self.clock = clock
        self.agent = agent or LeadAgent(db, sleep=sleep, clock=clock)
        self.claims = ClaimService(db)

    async def find_candidates(self, now: datetime) -> list[int]:
        lookback_start = now - timedelta(hours=settings.NUDGE_LOOKBACK_HOURS)

        # "engaged but quiet": the lead wrote at least once inside the lookback window
        engaged = exists().where(
            Message.conversation_id == Conversation.id,
            Message.direction == MessageDirection.INBOUND,
            Message.timestamp >= lookback_start,
        )
        latest_id = latest_message_column(Message.id)
        latest_direction = latest_message_column(Message.direction)

        result = await self.db.execute(
            select(Conversation.id)
            .where(
                Conversation.state == LeadState.ACTIVE.value,
                Conversation.ai_enabled.is_(True),
                Conversation.nudge_count < settings.NUDGE_MAX_COUNT,
                or_(Conversation.wait_until.is_(None), Conversation.wait_until <= now),
                idle_past_schedule(
                    Conversation.last_activity, Conversation.nudge_count, now, settings.nudge_schedule
                ),
                engaged,
                # הודעה נכנסת שעוד לא טופלה שייכת ללולאת התגובה
                or_(
                    latest_direction == MessageDirection.OUTBOUND,
                    latest_id == Conversation.last_processed_message_id,
                ),
            )
            .order_by(Conversation.last_activity.asc())
            .limit(settings.REPLY_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    @log_async_operation("nudge_loop_tick")
    async def run_once(self) -> list[AgentResult]:
        now = self.clock()
        if not is_within_business_hours(now):
            logger.debug("Outside business hours, nudge tick skipped")
            return []

        candidate_ids = await self.find_candidates(now)
        results: list[AgentResult] = []
        for index, conversation_id in enumerate(candidate_ids):
            if index:
                await self.sleep(settings.INTER_ITEM_DELAY_SECONDS)
            try:
                result = await self.process(conversation_id)
            except Exception as exc:
                logger.error(
                    "Nudge processing failed",
                    extra_data={"conversation_id": conversation_id, "error": str(exc)},
                    exc_info=True,
                )
                continue
            if result is not None:
                results.append(result)
        return results

    async def process(self, conversation_id: int) -> AgentResult | None:
        now = self.clock()
        with bind_conversation(conversation_id):
            async with self.claims.claimed(conversation_id, now) as is_claimed:
                if not is_claimed:
                    return None
                conversation = await load_conversation(self.db, conversation_id)
                # המצב עשוי היה להשתנות בין השאילתה ל-claim
                if (
                    conversation is None
                    or not conversation.ai_enabled
                    or conversation.state != LeadState.ACTIVE.value
                    or (conversation.wait_until is not None and conversation.wait_until > now)
                    or not is_nudge_due(conversation.last_activity, conversation.nudge_count, now)
                ):
                    return None
                return await self.agent.run_nudge(conversation, now)
