"""
Reply-Driven Scheduler Loop - reacts to new inbound messages.

One tick: business-hours gate -> select candidates (oldest activity first)
-> for each, sequentially: claim, reload, decide, release -> pace.
A failure on one conversation is logged and the batch continues.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import is_within_business_hours, utcnow
from app.core.config import settings
from app.core.logging import bind_conversation, get_logger, log_async_operation
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection
from app.domain.services.claim_service import ClaimService, load_conversation
from app.domain.services.lead_agent_service import AgentResult, LeadAgent
from app.state_machine.states import REPLY_ELIGIBLE_STATES

logger = get_logger(__name__)


def latest_message_column(column):
    """Correlated subquery: `column` of the newest message of the outer conversation."""
    return (
        select(column)
        .where(Message.conversation_id == Conversation.id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(1)
        .correlate(Conversation)
        .scalar_subquery()
    )


class ReplyLoop:
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
        latest_id = latest_message_column(Message.id)
        latest_direction = latest_message_column(Message.direction)

        result = await self.db.execute(
            select(Conversation.id)
            .where(
                Conversation.state.in_([state.value for state in REPLY_ELIGIBLE_STATES]),
                Conversation.ai_enabled.is_(True),
                Conversation.last_activity >= now - timedelta(hours=settings.REPLY_RECENCY_WINDOW_HOURS),
                Conversation.last_activity <= now - timedelta(seconds=settings.REPLY_QUIET_PERIOD_SECONDS),
                or_(Conversation.wait_until.is_(None), Conversation.wait_until <= now),
                latest_direction == MessageDirection.INBOUND,
                or_(
                    Conversation.last_processed_message_id.is_(None),
                    latest_id != Conversation.last_processed_message_id,
                ),
            )
            .order_by(Conversation.last_activity.asc())
            .limit(settings.REPLY_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    @log_async_operation("reply_loop_tick")
    async def run_once(self) -> list[AgentResult]:
        now = self.clock()
        if not is_within_business_hours(now):
            logger.debug("Outside business hours, reply tick skipped")
            return []

        candidate_ids = await self.find_candidates(now)
        if candidate_ids:
            logger.info("Reply loop candidates found", extra_data={"count": len(candidate_ids)})

        results: list[AgentResult] = []
        for index, conversation_id in enumerate(candidate_ids):
            if index:
                await self.sleep(settings.INTER_ITEM_DELAY_SECONDS)
            try:
                result = await self.process(conversation_id)
            except Exception as exc:
                logger.error(
                    "Reply processing failed, conversation stays eligible",
                    extra_data={"conversation_id": conversation_id, "error": str(exc)},
                    exc_info=True,
                )
                continue
            if result is not None:
                results.append(result)
        return results

    async def process(self, conversation_id: int) -> AgentResult | None:
        """Claim one conversation and run the reply decision. None when not claimed."""
        now = self.clock()
        with bind_conversation(conversation_id):
            async with self.claims.claimed(conversation_id, now) as is_claimed:
                if not is_claimed:
                    return None
                conversation = await load_conversation(self.db, conversation_id)
                if conversation is None or not conversation.ai_enabled:
                    return None
                return await self.agent.run_reply(conversation, now)
