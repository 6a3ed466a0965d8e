"""
Cold-Outreach (Drip) Loop - scripted first contact for never-engaged leads.

First pass: NEW leads older than DRIP_MIN_AGE_SECONDS get the opening hook
and move to DRIP. Later passes: DRIP leads whose last message is still ours
get the next template once DRIP_SCHEDULE_SECONDS[nudge_count] has passed,
up to DRIP_MAX_ATTEMPTS. No oracle involved. Any reply moves the lead to
ACTIVE (reply loop), which takes it out of this loop.
"""
from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import is_within_business_hours, utcnow
from app.core.config import settings
from app.core.logging import bind_conversation, get_logger, log_async_operation
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, SentBy
from app.domain.services.backoff import idle_past_schedule, is_drip_followup_due
from app.domain.services.claim_service import ClaimService, load_conversation
from app.domain.services.decision_log_service import DecisionLogService
from app.domain.services.dispatch_service import MessageDispatcher
from app.domain.services.message_service import MessageService
from app.domain.services.reply_loop_service import latest_message_column
from app.state_machine.manager import StateManager
from app.state_machine.states import LeadState

logger = get_logger(__name__)

DRIP_TEMPLATES = (
    "Did you get funded already?",
    "The money is expensive as is let me compete.",
    "Hey just following up again, should i close the file out?",
    "Hey let me know if i should close this out",
)

DRIP_BATCH_LIMIT = 100

_FIRST_NAME_RE = re.compile(r"\{\{\s*first_name\s*\}\}", re.IGNORECASE)
_AGENT_NAME_RE = re.compile(r"\{\{\s*agent_name\s*\}\}", re.IGNORECASE)


def format_name(name: str | None) -> str:
    """"JOHN smith" -> "John Smith"."""
    if not name:
        return ""
    return " ".join(word.capitalize() for word in name.strip().split())


def render_opening_hook(conversation: Conversation, template: str | None = None) -> str:
    template = template or settings.DRIP_OPENING_HOOK
    first_name = format_name(conversation.first_name) or "there"
    agent_name = conversation.assigned_agent_name or settings.DRIP_DEFAULT_AGENT_NAME
    text = _FIRST_NAME_RE.sub(lambda _: first_name, template)
    return _AGENT_NAME_RE.sub(lambda _: agent_name, text)


def drip_template(attempt: int) -> str:
    return DRIP_TEMPLATES[min(max(attempt, 0), len(DRIP_TEMPLATES) - 1)]


class DripLoop:
    def __init__(
        self,
        db: AsyncSession,
        *,
        dispatcher: MessageDispatcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.sleep = sleep
        self.clock = clock
        self.dispatcher = dispatcher or MessageDispatcher(db)
        self.claims = ClaimService(db)
        self.messages = MessageService(db)
        self.state_manager = StateManager(db)
        self.decision_log = DecisionLogService(db)

    async def find_new_leads(self, now: datetime) -> list[int]:
        result = await self.db.execute(
            select(Conversation.id)
            .where(
                Conversation.state == LeadState.NEW.value,
                Conversation.ai_enabled.is_(True),
                or_(Conversation.wait_until.is_(None), Conversation.wait_until <= now),
                Conversation.created_at <= now - timedelta(seconds=settings.DRIP_MIN_AGE_SECONDS),
            )
            .order_by(Conversation.created_at.asc())
            .limit(DRIP_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    async def find_followups(self, now: datetime) -> list[int]:
        result = await self.db.execute(
            select(Conversation.id)
            .where(
                Conversation.state == LeadState.DRIP.value,
                Conversation.ai_enabled.is_(True),
                or_(Conversation.wait_until.is_(None), Conversation.wait_until <= now),
                Conversation.last_activity > now - timedelta(hours=settings.REPLY_RECENCY_WINDOW_HOURS),
                Conversation.nudge_count < settings.DRIP_MAX_ATTEMPTS,
                idle_past_schedule(
                    Conversation.last_activity, Conversation.nudge_count, now, settings.drip_schedule
                ),
                latest_message_column(Message.direction) == MessageDirection.OUTBOUND,
            )
            .order_by(Conversation.last_activity.asc())
            .limit(DRIP_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    @log_async_operation("drip_loop_tick")
    async def run_once(self) -> int:
        """Returns the number of drip messages sent."""
        now = self.clock()
        if not is_within_business_hours(now):
            logger.debug("Outside business hours, drip tick skipped")
            return 0

        sent = 0
        hooks = await self.find_new_leads(now)
        followups = await self.find_followups(now)
        jobs = [(conversation_id, self.send_hook) for conversation_id in hooks]
        jobs += [(conversation_id, self.send_followup) for conversation_id in followups]

        for index, (conversation_id, handler) in enumerate(jobs):
            if index:
                await self.sleep(settings.INTER_ITEM_DELAY_SECONDS)
            try:
                if await handler(conversation_id):
                    sent += 1
            except Exception as exc:
                logger.error(
                    "Drip send failed",
                    extra_data={"conversation_id": conversation_id, "error": str(exc)},
                    exc_info=True,
                )
        return sent

    async def send_hook(self, conversation_id: int) -> bool:
        now = self.clock()
        with bind_conversation(conversation_id):
            async with self.claims.claimed(conversation_id, now) as is_claimed:
                if not is_claimed:
                    return False
                conversation = await load_conversation(self.db, conversation_id)
                if conversation is None or conversation.state != LeadState.NEW.value:
                    return False

                text = render_opening_hook(conversation)
                await self.dispatcher.send(conversation, text, SentBy.DRIP, now=now)
                # DRIP מאפס את nudge_count - ממנו נספרים ה-follow-ups
                await self.state_manager.transition_to(conversation, LeadState.DRIP, "drip", now)
                self.decision_log.record(
                    conversation.id,
                    source="drip",
                    action="opening_hook",
                    response_sent=text,
                    state_before=LeadState.NEW.value,
                    state_after=conversation.state,
                    now=now,
                )
                await self.db.commit()
                logger.info("Opening hook sent", extra_data={"conversation_id": conversation.id})
                return True

    async def send_followup(self, conversation_id: int) -> bool:
        now = self.clock()
        with bind_conversation(conversation_id):
            async with self.claims.claimed(conversation_id, now) as is_claimed:
                if not is_claimed:
                    return False
                conversation = await load_conversation(self.db, conversation_id)
                if conversation is None or conversation.state != LeadState.DRIP.value:
                    return False
                attempt = conversation.nudge_count or 0
                if not is_drip_followup_due(conversation.last_activity, attempt, now):
                    return False
                latest = await self.messages.latest_message(conversation.id)
                if latest is not None and latest.direction == MessageDirection.INBOUND:
                    # הליד ענה - לולאת התגובה תקדם אותו ל-ACTIVE
                    return False

                text = drip_template(attempt)
                await self.dispatcher.send(conversation, text, SentBy.DRIP, now=now)
                conversation.nudge_count = attempt + 1
                conversation.last_activity = now
                self.decision_log.record(
                    conversation.id,
                    source="drip",
                    action="drip_followup",
                    reason=f"attempt {attempt + 1} of {settings.DRIP_MAX_ATTEMPTS}",
                    response_sent=text,
                    state_before=conversation.state,
                    state_after=conversation.state,
                    now=now,
                )
                await self.db.commit()
                logger.info(
                    "Drip follow-up sent",
                    extra_data={"conversation_id": conversation.id, "attempt": attempt + 1},
                )
                return True
