"""
בדיקות לשרשרת ה-guards - app/domain/services/guards.py

כל guard נבדק בנפרד על DecisionContext שנבנה ידנית (ללא DB),
ובנוסף סדר העדיפויות של default_guards.
"""
from datetime import timedelta

import pytest

from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, SentBy
from app.domain.services.classifiers import KeywordClassifier
from app.domain.services.fact_service import BREAKUP_SENT_AT
from app.domain.services.guards import (
    CLOSE_CONFIRMED_MESSAGE,
    CloseConfirmationGuard,
    DecisionContext,
    HumanInterruptionGuard,
    PureAcknowledgementGuard,
    RestrictedStateGuard,
    StallBreakupGuard,
    default_guards,
    evaluate_guards,
)
from app.domain.services.stall_service import BREAKUP_MESSAGE
from app.state_machine.states import LeadState
from tests.conftest import FIXED_NOW

_classifier = KeywordClassifier()
_ids = iter(range(1, 10_000))


def _msg(content: str, direction: MessageDirection, sent_by: SentBy, minutes_ago: int = 5) -> Message:
    return Message(
        id=next(_ids),
        conversation_id=1,
        direction=direction,
        sent_by=sent_by,
        content=content,
        timestamp=FIXED_NOW - timedelta(minutes=minutes_ago),
    )


def _ctx(
    state: LeadState = LeadState.ACTIVE,
    inbound: str | None = "hello",
    previous_outbound: Message | None = None,
    newest: Message | None = None,
    stall_count: int = 0,
    facts: dict | None = None,
    manual_instruction: str | None = None,
) -> DecisionContext:
    conversation = Conversation(id=1, state=state.value, stall_count=stall_count, nudge_count=0)
    latest_inbound = (
        _msg(inbound, MessageDirection.INBOUND, SentBy.CUSTOMER, minutes_ago=3) if inbound is not None else None
    )
    latest = [m for m in (newest or latest_inbound, previous_outbound) if m is not None]
    return DecisionContext(
        conversation=conversation,
        observed_state=state,
        now=FIXED_NOW,
        latest_inbound=latest_inbound,
        latest_messages=latest,
        previous_outbound=previous_outbound,
        facts=facts or {},
        manual_instruction=manual_instruction,
    )


class TestRestrictedStateGuard:

    @pytest.mark.unit
    @pytest.mark.parametrize("state", [LeadState.READY_TO_SUBMIT, LeadState.OFFER_RECEIVED])
    def test_blocks_restricted_states(self, state):
        outcome = RestrictedStateGuard(_classifier).check(_ctx(state=state))
        assert outcome is not None
        assert outcome.action == "blocked"
        assert outcome.message is None
        assert outcome.mark_processed is True

    @pytest.mark.unit
    def test_passes_active(self):
        assert RestrictedStateGuard(_classifier).check(_ctx(state=LeadState.ACTIVE)) is None

    @pytest.mark.unit
    def test_manual_command_overrides_lock(self):
        ctx = _ctx(state=LeadState.READY_TO_SUBMIT, manual_instruction="tell them docs are in review")
        assert RestrictedStateGuard(_classifier).check(ctx) is None

    @pytest.mark.unit
    def test_short_instruction_is_not_a_command(self):
        """הוראה של 5 תווים ומטה אינה פקודה ידנית"""
        ctx = _ctx(state=LeadState.READY_TO_SUBMIT, manual_instruction="go")
        assert RestrictedStateGuard(_classifier).check(ctx) is not None


class TestHumanInterruptionGuard:

    @pytest.mark.unit
    def test_recent_human_message_silences(self):
        human = _msg("ill call you in 5", MessageDirection.OUTBOUND, SentBy.HUMAN, minutes_ago=2)
        outcome = HumanInterruptionGuard(_classifier).check(_ctx(newest=human))
        assert outcome is not None
        assert outcome.action == "silent"
        assert outcome.mark_processed is False

    @pytest.mark.unit
    def test_old_human_message_passes(self):
        human = _msg("ill call you", MessageDirection.OUTBOUND, SentBy.HUMAN, minutes_ago=30)
        assert HumanInterruptionGuard(_classifier).check(_ctx(newest=human)) is None

    @pytest.mark.unit
    def test_lead_replied_after_human_passes(self):
        """הליד ענה אחרי המפעיל - ההודעה האחרונה נכנסת, ה-guard לא חל"""
        human = _msg("ill call you", MessageDirection.OUTBOUND, SentBy.HUMAN, minutes_ago=4)
        assert HumanInterruptionGuard(_classifier).check(_ctx(previous_outbound=human)) is None

    @pytest.mark.unit
    def test_ai_message_passes(self):
        ai = _msg("what's your email?", MessageDirection.OUTBOUND, SentBy.AI, minutes_ago=1)
        assert HumanInterruptionGuard(_classifier).check(_ctx(newest=ai)) is None


class TestPureAcknowledgementGuard:

    @pytest.mark.unit
    def test_ack_in_drip_after_statement(self):
        previous = _msg("The money is expensive as is let me compete.", MessageDirection.OUTBOUND, SentBy.DRIP, 30)
        outcome = PureAcknowledgementGuard(_classifier).check(
            _ctx(state=LeadState.DRIP, inbound="ok", previous_outbound=previous)
        )
        assert outcome is not None
        assert outcome.reset_nudges is True
        assert outcome.message is None

    @pytest.mark.unit
    def test_ack_after_question_passes(self):
        previous = _msg("Did you get funded already?", MessageDirection.OUTBOUND, SentBy.DRIP, 30)
        ctx = _ctx(state=LeadState.DRIP, inbound="ok", previous_outbound=previous)
        assert PureAcknowledgementGuard(_classifier).check(ctx) is None

    @pytest.mark.unit
    def test_ack_outside_drip_passes(self):
        previous = _msg("sent the numbers over.", MessageDirection.OUTBOUND, SentBy.AI, 30)
        ctx = _ctx(state=LeadState.ACTIVE, inbound="thanks", previous_outbound=previous)
        assert PureAcknowledgementGuard(_classifier).check(ctx) is None

    @pytest.mark.unit
    def test_real_content_passes(self):
        ctx = _ctx(state=LeadState.DRIP, inbound="ok how much can i get")
        assert PureAcknowledgementGuard(_classifier).check(ctx) is None


class TestCloseConfirmationGuard:

    @pytest.mark.unit
    def test_yes_to_close_question_marks_dead(self):
        previous = _msg("Hey let me know if i should close this out", MessageDirection.OUTBOUND, SentBy.DRIP, 60)
        outcome = CloseConfirmationGuard(_classifier).check(_ctx(inbound="yes", previous_outbound=previous))
        assert outcome is not None
        assert outcome.next_state == LeadState.DEAD
        assert outcome.message == CLOSE_CONFIRMED_MESSAGE

    @pytest.mark.unit
    def test_yes_to_pitch_is_not_close(self):
        previous = _msg(
            "i can do 25k at a weekly payment, should i close the file or lock it in?",
            MessageDirection.OUTBOUND,
            SentBy.AI,
            60,
        )
        ctx = _ctx(inbound="yes", previous_outbound=previous)
        assert CloseConfirmationGuard(_classifier).check(ctx) is None

    @pytest.mark.unit
    def test_other_answer_passes(self):
        previous = _msg("should i close the file out?", MessageDirection.OUTBOUND, SentBy.DRIP, 60)
        ctx = _ctx(inbound="no wait, still need it", previous_outbound=previous)
        assert CloseConfirmationGuard(_classifier).check(ctx) is None


class TestStallBreakupGuard:

    @pytest.mark.unit
    def test_breakup_sent_once(self):
        outcome = StallBreakupGuard(_classifier).check(_ctx(stall_count=4))
        assert outcome is not None
        assert outcome.message == BREAKUP_MESSAGE
        assert outcome.dormant is True
        assert BREAKUP_SENT_AT in outcome.fact_updates

    @pytest.mark.unit
    def test_after_breakup_stays_silent(self):
        outcome = StallBreakupGuard(_classifier).check(
            _ctx(stall_count=5, facts={BREAKUP_SENT_AT: FIXED_NOW.isoformat()})
        )
        assert outcome is not None
        assert outcome.message is None
        assert outcome.action == "no_response"
        assert outcome.dormant is True

    @pytest.mark.unit
    def test_below_threshold_passes(self):
        assert StallBreakupGuard(_classifier).check(_ctx(stall_count=3)) is None


class TestGuardChain:

    @pytest.mark.unit
    def test_restricted_wins_over_human(self):
        human = _msg("on it", MessageDirection.OUTBOUND, SentBy.HUMAN, minutes_ago=1)
        outcome = evaluate_guards(
            _ctx(state=LeadState.OFFER_RECEIVED, newest=human),
            default_guards(_classifier),
        )
        assert outcome.guard == "restricted_state"

    @pytest.mark.unit
    def test_all_pass_returns_none(self):
        assert evaluate_guards(_ctx(inbound="what's the rate?"), default_guards(_classifier)) is None

    @pytest.mark.unit
    def test_order(self):
        names = [guard.name for guard in default_guards(_classifier)]
        assert names == [
            "restricted_state",
            "human_interruption",
            "pure_acknowledgement",
            "close_confirmation",
            "stall_breakup",
        ]
