"""
Guard chain - deterministic short-circuits evaluated before the oracle.

Each guard returns a GuardOutcome (terminal decision) or None ("pass").
The first guard that returns an outcome wins; when every guard passes, the
decision falls through to the oracle.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from app.core.config import settings
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, SentBy
from app.domain.services.classifiers import BaseMessageClassifier
from app.domain.services.fact_service import BREAKUP_SENT_AT
from app.domain.services.stall_service import BREAKUP_MESSAGE
from app.state_machine.states import LeadState, RESTRICTED_STATES

CLOSE_CONFIRMED_MESSAGE = (
    "understood, ill close it out. if anything changes down the line feel free to reach back out"
)


@dataclass
class DecisionContext:
    """What the guards (and later the oracle) see about one conversation."""

    conversation: Conversation
    observed_state: LeadState
    now: datetime
    latest_inbound: Message | None = None
    # Newest first; latest_messages[0] is the newest message overall
    latest_messages: list[Message] = field(default_factory=list)
    # Latest outbound older than latest_inbound
    previous_outbound: Message | None = None
    facts: dict[str, str] = field(default_factory=dict)
    manual_instruction: str | None = None

    @property
    def is_manual_command(self) -> bool:
        return bool(self.manual_instruction) and len(self.manual_instruction.strip()) > 5

    @property
    def inbound_text(self) -> str:
        return self.latest_inbound.content if self.latest_inbound else ""


@dataclass
class GuardOutcome:
    guard: str
    action: str
    reason: str
    message: str | None = None
    next_state: LeadState | None = None
    reset_nudges: bool = False
    # dormant: push nudge_count to the cap so no autonomous nudge follows
    dormant: bool = False
    # whether the triggering inbound message counts as processed
    mark_processed: bool = True
    fact_updates: dict[str, str] = field(default_factory=dict)


class Guard(ABC):
    name: str = "guard"

    def __init__(self, classifier: BaseMessageClassifier):
        self.classifier = classifier

    @abstractmethod
    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        """Return a terminal outcome, or None to pass."""


class RestrictedStateGuard(Guard):
    """Hard status lock: nothing autonomous goes out in READY_TO_SUBMIT / OFFER_RECEIVED."""

    name = "restricted_state"

    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        if ctx.observed_state not in RESTRICTED_STATES or ctx.is_manual_command:
            return None
        return GuardOutcome(
            guard=self.name,
            action="blocked",
            reason=f"state {ctx.observed_state.value} is locked for autonomous messages",
        )


class HumanInterruptionGuard(Guard):
    """A human operator wrote last, recently, and the lead has not answered yet."""

    name = "human_interruption"

    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        if ctx.is_manual_command or not ctx.latest_messages:
            return None

        newest = ctx.latest_messages[0]
        if newest.direction != MessageDirection.OUTBOUND or newest.sent_by != SentBy.HUMAN:
            return None

        grace = timedelta(minutes=settings.HUMAN_GRACE_MINUTES)
        if newest.timestamp is None or ctx.now - newest.timestamp >= grace:
            return None

        return GuardOutcome(
            guard=self.name,
            action="silent",
            reason="human operator replied within the grace window",
            # אין הודעה נכנסת חדשה שטופלה - לא מקדמים את שער האידמפוטנטיות
            mark_processed=False,
        )


class PureAcknowledgementGuard(Guard):
    """A bare "ok"/"thanks" during cold outreach after a non-question needs no answer."""

    name = "pure_acknowledgement"

    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        if ctx.is_manual_command or ctx.observed_state != LeadState.DRIP:
            return None
        if not self.classifier.is_acknowledgement(ctx.inbound_text):
            return None
        if ctx.previous_outbound is not None and self.classifier.is_question(
            ctx.previous_outbound.content
        ):
            return None
        return GuardOutcome(
            guard=self.name,
            action="acknowledged",
            reason="pure acknowledgement during cold outreach",
            reset_nudges=True,
        )


class CloseConfirmationGuard(Guard):
    """We asked "should i close the file?" and the lead said yes."""

    name = "close_confirmation"

    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        last_outbound = ctx.previous_outbound
        if last_outbound is None or not self.classifier.asks_to_close(last_outbound.content):
            return None
        if self.classifier.is_pitching(last_outbound.content):
            return None
        if not self.classifier.is_affirmative(ctx.inbound_text):
            return None
        return GuardOutcome(
            guard=self.name,
            action="mark_dead",
            reason="lead confirmed closing the file",
            message=CLOSE_CONFIRMED_MESSAGE,
            next_state=LeadState.DEAD,
        )


class StallBreakupGuard(Guard):
    """Final stall threshold: one scripted breakup message, then dormant."""

    name = "stall_breakup"

    def check(self, ctx: DecisionContext) -> GuardOutcome | None:
        if ctx.is_manual_command:
            return None
        if (ctx.conversation.stall_count or 0) < settings.STALL_BREAKUP_THRESHOLD:
            return None

        if ctx.facts.get(BREAKUP_SENT_AT):
            return GuardOutcome(
                guard=self.name,
                action="no_response",
                reason="stalled past breakup, already sent",
                dormant=True,
            )
        return GuardOutcome(
            guard=self.name,
            action="breakup",
            reason=f"stall count reached {ctx.conversation.stall_count}",
            message=BREAKUP_MESSAGE,
            dormant=True,
            fact_updates={BREAKUP_SENT_AT: ctx.now.isoformat()},
        )


def default_guards(classifier: BaseMessageClassifier) -> list[Guard]:
    """Priority order: first match wins."""
    return [
        RestrictedStateGuard(classifier),
        HumanInterruptionGuard(classifier),
        PureAcknowledgementGuard(classifier),
        CloseConfirmationGuard(classifier),
        StallBreakupGuard(classifier),
    ]


def evaluate_guards(ctx: DecisionContext, guards: Sequence[Guard]) -> GuardOutcome | None:
    for guard in guards:
        outcome = guard.check(ctx)
        if outcome is not None:
            return outcome
    return None
