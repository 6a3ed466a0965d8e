"""
Lead Agent - decides and applies the next action for one claimed conversation.

Entry points (the caller already holds the processing lock):
- run_reply: a new inbound message was observed by the reply loop
- run_nudge: a previously-engaged lead went quiet (nudge loop)
- run_manual: operator trigger, with an instruction or a verbatim message

Decision order: gates (delivery channel, wait_until, idempotency) ->
stall registration -> guard chain -> Decision Oracle -> apply.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import describe_business_hours, to_local, utcnow
from app.core.config import settings
from app.core.exceptions import NoDeliveryChannelError, ProtectedStateError
from app.core.logging import get_logger
from app.core.redis_client import acquire_lease
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, SentBy
from app.domain.services.classifiers import BaseMessageClassifier, get_classifier
from app.domain.services.decision_log_service import DecisionLogService
from app.domain.services.dispatch_service import MessageDispatcher
from app.domain.services.enrichment_service import EnrichmentService
from app.domain.services.fact_service import (
    EMAIL,
    PITCH_ACCEPTED,
    FactService,
    is_meaningful,
    is_truthy_fact,
)
from app.domain.services.guards import (
    DecisionContext,
    Guard,
    GuardOutcome,
    HumanInterruptionGuard,
    default_guards,
    evaluate_guards,
)
from app.domain.services.message_service import MessageService
from app.domain.services.oracle import (
    BaseDecisionOracle,
    OracleAction,
    OracleContext,
    OracleDecision,
    get_decision_oracle,
)
from app.domain.services.stall_service import StallDetector, stall_guidance
from app.state_machine.manager import StateManager
from app.state_machine.states import LeadState, PRE_ENGAGEMENT_STATES, PROTECTED_STATES

logger = get_logger(__name__)

PITCH_CONFIRMATION_QUESTION = (
    "just to confirm, youre good with that amount and a weekly payment right?"
)
EMAIL_REQUEST_MESSAGE = "whats the best email to send the offer to?"
QUALIFY_ACK_MESSAGE = "got it. give me a few minutes to run the numbers and ill text you back shortly"
SYNC_DRIVE_DEFAULT_MESSAGE = "got it. just confirming any new loans this month?"

# Decision sources (DecisionLog.source)
SOURCE_REPLY = "reply"
SOURCE_NUDGE = "nudge"
SOURCE_MANUAL = "manual"

# qualify אחרי הגשה לא מפעיל סנכרון מחדש
_QUALIFY_LOCKED_STATES = {LeadState.SUBMITTED.value, LeadState.READY_TO_SUBMIT.value}


@dataclass
class AgentResult:
    """What happened to one conversation in one pass"""

    conversation_id: int
    source: str
    action: str
    guard: str | None = None
    reason: str | None = None
    response: str | None = None
    sent: bool = False
    state_before: str | None = None
    state_after: str | None = None

    @property
    def skipped(self) -> bool:
        return self.action == "skipped"


def response_prefix(text: str | None, length: int | None = None) -> str:
    """Opening of a message, case- and whitespace-insensitive, used for duplicate detection."""
    length = settings.DUPLICATE_PREFIX_CHARS if length is None else length
    return " ".join((text or "").lower().split())[:length]


def build_temporal_context(conversation: Conversation, now: datetime) -> dict:
    """Clock, business-hours phrase and statement guidance in the business timezone."""
    local = to_local(now)
    last_month = (local.replace(day=1) - timedelta(days=1)).strftime("%B")
    this_month = local.strftime("%B")

    if local.day <= 7:
        statement_guidance = (
            f"Early {this_month}: the full {last_month} statement may not be generated yet. "
            f"Ask for {last_month} transactions or {this_month} month-to-date instead."
        )
    elif local.day <= 15:
        statement_guidance = (
            f"The {last_month} statement should be available. "
            f"{this_month} month-to-date is only needed if they took new funding this month."
        )
    else:
        statement_guidance = (
            f"The {last_month} statement is definitely available. "
            f"{this_month} month-to-date can help if the lender needs recent activity."
        )

    context = {
        "local_time": local.strftime("%A, %B %d, %Y %I:%M %p"),
        "timezone": settings.BUSINESS_TIMEZONE,
        "business_hours": describe_business_hours(now),
        "statement_guidance": statement_guidance,
    }
    if conversation.created_at is not None:
        days = (now - conversation.created_at).days
        if days <= 0:
            context["conversation_age"] = "started today"
        elif days == 1:
            context["conversation_age"] = "started yesterday"
        else:
            context["conversation_age"] = f"started {days} days ago"
    return context


class LeadAgent:
    def __init__(
        self,
        db: AsyncSession,
        *,
        oracle: BaseDecisionOracle | None = None,
        dispatcher: MessageDispatcher | None = None,
        classifier: BaseMessageClassifier | None = None,
        guards: Sequence[Guard] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.oracle = oracle or get_decision_oracle()
        self.dispatcher = dispatcher or MessageDispatcher(db)
        self.classifier = classifier or get_classifier()
        self.guards = list(guards) if guards is not None else default_guards(self.classifier)
        self.sleep = sleep
        self.clock = clock

        self.messages = MessageService(db)
        self.facts = FactService(db)
        self.state_manager = StateManager(db)
        self.stall_detector = StallDetector(self.classifier)
        self.decision_log = DecisionLogService(db)
        self.enrichment = EnrichmentService(db)

    # ==================== Entry points ====================

    async def run_reply(self, conversation: Conversation, now: datetime | None = None) -> AgentResult:
        now = now or self.clock()
        result = AgentResult(
            conversation_id=conversation.id,
            source=SOURCE_REPLY,
            action="skipped",
            state_before=conversation.state,
            state_after=conversation.state,
        )

        if not self.dispatcher.provider.is_deliverable(conversation.lead_phone):
            logger.warning(
                "No delivery channel, conversation skipped",
                extra_data={"conversation_id": conversation.id},
            )
            result.reason = "no delivery channel"
            return result

        if conversation.wait_until is not None and conversation.wait_until > now:
            result.reason = "waiting"
            return result

        latest_inbound = await self.messages.latest_inbound(conversation.id)
        if latest_inbound is None:
            result.reason = "no inbound message"
            return result

        if latest_inbound.id == conversation.last_processed_message_id:
            await self._log_skip_throttled(conversation, latest_inbound.id)
            result.reason = "already processed"
            return result

        ctx = await self._build_context(conversation, now, latest_inbound=latest_inbound)

        # שינויי stall נכתבים לפני ה-guards כדי שה-breakup יראה את הספירה העדכנית
        stall_counted = self.stall_detector.register_inbound(conversation, latest_inbound.content)

        if ctx.observed_state in PRE_ENGAGEMENT_STATES:
            await self.state_manager.transition_to(conversation, LeadState.ACTIVE, "system", now)

        return await self._decide(ctx, SOURCE_REPLY, self.guards, stall_counted=stall_counted)

    async def run_nudge(self, conversation: Conversation, now: datetime | None = None) -> AgentResult:
        now = now or self.clock()
        ctx = await self._build_context(conversation, now)
        # nudge אינו מגיב להודעה חדשה - רק ה-guard של התערבות אנושית רלוונטי
        nudge_guards = [HumanInterruptionGuard(self.classifier)]
        return await self._decide(ctx, SOURCE_NUDGE, nudge_guards, is_nudge=True)

    async def run_manual(
        self,
        conversation: Conversation,
        *,
        instruction: str | None = None,
        direct_message: str | None = None,
        next_state: LeadState | None = None,
        now: datetime | None = None,
    ) -> AgentResult:
        """
        Operator trigger.

        Raises:
            ProtectedStateError: next_state requested for a DEAD/SUBMITTED/ARCHIVED lead.
            NoDeliveryChannelError: the lead has no usable phone.
        """
        now = now or self.clock()
        if next_state is not None and LeadState(conversation.state) in PROTECTED_STATES:
            raise ProtectedStateError(conversation.id, conversation.state)
        if not self.dispatcher.provider.is_deliverable(conversation.lead_phone):
            raise NoDeliveryChannelError(conversation.id)

        if direct_message:
            result = await self._send_direct(conversation, direct_message, now)
        else:
            ctx = await self._build_context(conversation, now, manual_instruction=instruction)
            if ctx.is_manual_command:
                result = await self._decide(ctx, SOURCE_MANUAL, [])
            elif self._is_gated(ctx):
                result = AgentResult(
                    conversation_id=conversation.id,
                    source=SOURCE_MANUAL,
                    action="skipped",
                    reason="nothing new to decide on",
                    state_before=conversation.state,
                    state_after=conversation.state,
                )
            else:
                result = await self._decide(ctx, SOURCE_MANUAL, self.guards)

        if next_state is not None:
            await self.state_manager.force_state(conversation, next_state, "human", now)
            await self.db.commit()
            result.state_after = conversation.state
        return result

    # ==================== Decision ====================

    @staticmethod
    def _is_gated(ctx: DecisionContext) -> bool:
        """wait_until in the future, or the latest inbound was already decided on."""
        conversation = ctx.conversation
        if conversation.wait_until is not None and conversation.wait_until > ctx.now:
            return True
        inbound = ctx.latest_inbound
        return inbound is not None and inbound.id == conversation.last_processed_message_id

    async def _build_context(
        self,
        conversation: Conversation,
        now: datetime,
        *,
        latest_inbound: Message | None = None,
        manual_instruction: str | None = None,
    ) -> DecisionContext:
        if latest_inbound is None:
            latest_inbound = await self.messages.latest_inbound(conversation.id)
        previous_outbound = await self.messages.last_outbound_before(conversation.id, latest_inbound)
        return DecisionContext(
            conversation=conversation,
            observed_state=LeadState(conversation.state),
            now=now,
            latest_inbound=latest_inbound,
            latest_messages=await self.messages.latest_messages(conversation.id, limit=2),
            previous_outbound=previous_outbound,
            facts=await self.facts.get_facts(conversation.id),
            manual_instruction=manual_instruction,
        )

    async def _decide(
        self,
        ctx: DecisionContext,
        source: str,
        guards: Sequence[Guard],
        *,
        stall_counted: bool = False,
        is_nudge: bool = False,
    ) -> AgentResult:
        outcome = evaluate_guards(ctx, guards)
        if outcome is not None:
            return await self._apply_guard_outcome(ctx, outcome, source)

        oracle_context = await self._build_oracle_context(ctx, is_nudge=is_nudge)
        decision = await self.oracle.decide(oracle_context)
        logger.info(
            "Oracle decision received",
            extra_data={
                "conversation_id": ctx.conversation.id,
                "source": source,
                "action": decision.action.value,
                "reason": decision.reason,
                "oracle": self.oracle.provider_name,
            },
        )
        return await self._apply_decision(ctx, decision, source, stall_counted=stall_counted)

    async def _build_oracle_context(self, ctx: DecisionContext, *, is_nudge: bool) -> OracleContext:
        conversation = ctx.conversation
        history = await self.messages.history(conversation.id, settings.ORACLE_HISTORY_LIMIT)
        strategy_context = conversation.strategy_context or {}

        return OracleContext(
            conversation_id=conversation.id,
            state=conversation.state,
            lead_name=conversation.first_name,
            business_name=conversation.business_name,
            agent_name=conversation.assigned_agent_name or settings.DRIP_DEFAULT_AGENT_NAME,
            history=[
                {
                    "direction": m.direction.value,
                    "sent_by": m.sent_by.value,
                    "content": m.content,
                    "timestamp": m.timestamp.isoformat() if m.timestamp else None,
                }
                for m in history
            ],
            facts=ctx.facts,
            offers=strategy_context.get("offers") or [],
            strategy=strategy_context.get("strategy"),
            temporal_context=build_temporal_context(conversation, ctx.now),
            pending_question=conversation.pending_question,
            stall_guidance=stall_guidance(conversation.stall_count or 0),
            manual_instruction=ctx.manual_instruction if ctx.is_manual_command else None,
            is_nudge=is_nudge,
        )

    async def _apply_guard_outcome(
        self,
        ctx: DecisionContext,
        outcome: GuardOutcome,
        source: str,
    ) -> AgentResult:
        conversation = ctx.conversation
        state_before = ctx.observed_state.value

        if outcome.reset_nudges:
            conversation.nudge_count = 0
            conversation.last_activity = ctx.now

        if outcome.next_state is not None:
            await self.state_manager.transition_to(conversation, outcome.next_state, "ai", ctx.now)

        sent = None
        if outcome.message:
            sent = await self._deliver(ctx, outcome.message, pace=source != SOURCE_MANUAL)

        # עובדות ו-dormant של guard עם הודעה חלים רק אם ההודעה באמת יצאה
        if outcome.message is None or sent is not None:
            for key, value in outcome.fact_updates.items():
                await self.facts.upsert(conversation.id, key, value, ctx.now)
            if outcome.dormant:
                conversation.nudge_count = settings.NUDGE_MAX_COUNT

        if outcome.mark_processed:
            self._mark_processed(conversation, ctx.latest_inbound)
            conversation.last_ai_decision = outcome.action
            conversation.last_ai_decision_at = ctx.now

        self.decision_log.record(
            conversation.id,
            source=source,
            guard=outcome.guard,
            action=outcome.action,
            reason=outcome.reason,
            lead_message=ctx.inbound_text or None,
            response_sent=sent.content if sent else None,
            state_before=state_before,
            state_after=conversation.state,
            now=ctx.now,
        )
        await self.db.commit()

        logger.info(
            "Guard short-circuited decision",
            extra_data={
                "conversation_id": conversation.id,
                "guard": outcome.guard,
                "action": outcome.action,
                "reason": outcome.reason,
            },
        )
        return AgentResult(
            conversation_id=conversation.id,
            source=source,
            action=outcome.action,
            guard=outcome.guard,
            reason=outcome.reason,
            response=sent.content if sent else None,
            sent=sent is not None,
            state_before=state_before,
            state_after=conversation.state,
        )

    async def _apply_decision(
        self,
        ctx: DecisionContext,
        decision: OracleDecision,
        source: str,
        *,
        stall_counted: bool = False,
    ) -> AgentResult:
        conversation = ctx.conversation
        now = ctx.now
        state_before = ctx.observed_state.value

        if source == SOURCE_REPLY:
            stall_counted = (
                self.stall_detector.register_oracle_reason(conversation, decision.reason, stall_counted)
                or stall_counted
            )

        stored = await self.facts.upsert_many(conversation.id, decision.extracted_facts, now)
        for key in stored:
            ctx.facts[key] = str(decision.extracted_facts[key])

        conversation.pending_question = decision.pending_question
        conversation.wait_until = decision.wait_until

        action = decision.action
        text = decision.message if decision.produces_message else None

        if action == OracleAction.MARK_DEAD:
            await self.state_manager.transition_to(conversation, LeadState.DEAD, "ai", now)

        elif action == OracleAction.READY_TO_SUBMIT:
            if is_truthy_fact(ctx.facts.get(PITCH_ACCEPTED)):
                await self.state_manager.transition_to(
                    conversation, LeadState.READY_TO_SUBMIT, "ai", now
                )
            else:
                logger.info(
                    "ready_to_submit withheld, no pitch acceptance on record",
                    extra_data={"conversation_id": conversation.id},
                )
                text = PITCH_CONFIRMATION_QUESTION

        elif action == OracleAction.QUALIFY:
            if not is_meaningful(ctx.facts.get(EMAIL)):
                text = EMAIL_REQUEST_MESSAGE
                conversation.pending_question = EMAIL
            elif conversation.state not in _QUALIFY_LOCKED_STATES:
                if source != SOURCE_NUDGE:
                    conversation.nudge_count = 0
                await self.enrichment.trigger(conversation.id, "qualify", now)
                text = QUALIFY_ACK_MESSAGE

        elif action == OracleAction.SYNC_DRIVE:
            await self.enrichment.trigger(conversation.id, "sync_drive", now)
            text = text or SYNC_DRIVE_DEFAULT_MESSAGE

        elif action == OracleAction.NO_RESPONSE:
            # חונים את השיחה - לא תיבחר שוב לפני שיעבור חלון ה-park
            conversation.last_activity = now + timedelta(minutes=settings.NO_RESPONSE_PARK_MINUTES)
            if source != SOURCE_NUDGE and not stall_counted:
                conversation.nudge_count = 0

        sent = None
        if text:
            sent = await self._deliver(ctx, text, pace=source != SOURCE_MANUAL)
            if sent is not None and source == SOURCE_NUDGE:
                conversation.nudge_count = min(
                    (conversation.nudge_count or 0) + 1, settings.NUDGE_MAX_COUNT
                )

        if source != SOURCE_NUDGE:
            self._mark_processed(conversation, ctx.latest_inbound)
        conversation.last_ai_decision = action.value
        conversation.last_ai_decision_at = now

        self.decision_log.record(
            conversation.id,
            source=source,
            action=action.value,
            reason=decision.reason,
            lead_message=ctx.inbound_text or None,
            response_sent=sent.content if sent else None,
            state_before=state_before,
            state_after=conversation.state,
            now=now,
        )
        await self.db.commit()

        return AgentResult(
            conversation_id=conversation.id,
            source=source,
            action=action.value,
            reason=decision.reason,
            response=sent.content if sent else None,
            sent=sent is not None,
            state_before=state_before,
            state_after=conversation.state,
        )

    async def _send_direct(self, conversation: Conversation, text: str, now: datetime) -> AgentResult:
        """Verbatim operator message: no oracle, no pacing, no duplicate check."""
        state_before = conversation.state
        latest_inbound = await self.messages.latest_inbound(conversation.id)
        sent = await self.dispatcher.send(conversation, text, SentBy.DRIP, now=now)

        self._mark_processed(conversation, latest_inbound)
        self.decision_log.record(
            conversation.id,
            source=SOURCE_MANUAL,
            action="direct_message",
            reason="operator message sent verbatim",
            lead_message=latest_inbound.content if latest_inbound else None,
            response_sent=sent.content,
            state_before=state_before,
            state_after=conversation.state,
            now=now,
        )
        await self.db.commit()
        return AgentResult(
            conversation_id=conversation.id,
            source=SOURCE_MANUAL,
            action="direct_message",
            response=sent.content,
            sent=True,
            state_before=state_before,
            state_after=conversation.state,
        )

    # ==================== Delivery ====================

    async def _deliver(self, ctx: DecisionContext, text: str, *, pace: bool) -> Message | None:
        """
        Pace, re-check and send one AI message.

        Returns None when the response was discarded (newer message in the
        log, or a near-duplicate of something recently sent).
        """
        conversation = ctx.conversation
        sent_at = ctx.now

        if pace:
            # לא מחזיקים טרנזקציה פתוחה בזמן ההמתנה
            await self.db.commit()
            delay = random.uniform(settings.HUMAN_DELAY_MIN_SECONDS, settings.HUMAN_DELAY_MAX_SECONDS)
            logger.debug(
                "Waiting before reply",
                extra_data={"conversation_id": conversation.id, "delay_seconds": round(delay, 1)},
            )
            await self.sleep(delay)
            sent_at = ctx.now + timedelta(seconds=delay)

            if await self._superseded(ctx):
                logger.info(
                    "Newer message arrived during delay, response discarded",
                    extra_data={"conversation_id": conversation.id},
                )
                return None

        if await self._is_duplicate(conversation.id, text):
            logger.warning(
                "Duplicate response blocked",
                extra_data={"conversation_id": conversation.id, "prefix": response_prefix(text)},
            )
            return None

        return await self.dispatcher.send(conversation, text, SentBy.AI, now=sent_at)

    async def _superseded(self, ctx: DecisionContext) -> bool:
        newest = await self.messages.latest_message(ctx.conversation.id)
        snapshot = ctx.latest_messages[0] if ctx.latest_messages else None
        if newest is None or (snapshot is not None and newest.id == snapshot.id):
            return False
        return newest.direction == MessageDirection.INBOUND or newest.sent_by == SentBy.HUMAN

    async def _is_duplicate(self, conversation_id: int, text: str) -> bool:
        prefix = response_prefix(text)
        if not prefix:
            return False
        recent = await self.messages.recent_outbound(conversation_id, settings.DUPLICATE_LOOKBACK_MESSAGES)
        return any(response_prefix(message.content) == prefix for message in recent)

    # ==================== Bookkeeping ====================

    @staticmethod
    def _mark_processed(conversation: Conversation, inbound: Message | None) -> None:
        """last_processed_message_id only moves forward."""
        if inbound is None:
            return
        current = conversation.last_processed_message_id
        if current is None or inbound.id > current:
            conversation.last_processed_message_id = inbound.id

    async def _log_skip_throttled(self, conversation: Conversation, message_id: int) -> None:
        """Log "nothing new" once per message per throttle window."""
        key = f"skip_log:{conversation.id}:{message_id}"
        try:
            should_log = await acquire_lease(key, settings.SKIP_LOG_THROTTLE_SECONDS)
        except Exception:
            # Redis לא זמין - עדיף לוג כפול מאשר שקט
            should_log = True
        if should_log:
            logger.info(
                "Skipping conversation, nothing new since last decision",
                extra_data={
                    "conversation_id": conversation.id,
                    "last_processed_message_id": message_id,
                    "last_ai_decision": conversation.last_ai_decision,
                },
            )
