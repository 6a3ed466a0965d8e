"""
בדיקות למכונת המצבים - app/state_machine

מכסה:
- טבלת המעברים (מצבים סופיים, נעילות סטטוס)
- StateManager.transition_to: מעבר תקין, no-op, מעבר אסור
- force_state: עוקף ולידציה אבל נרשם ב-audit
- איפוס nudge_count ו-last_activity בכל מעבר אמיתי
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.db.models.state_transition import StateTransition
from app.state_machine.manager import StateManager
from app.state_machine.states import (
    LEAD_TRANSITIONS,
    LeadState,
    PROTECTED_STATES,
    RESTRICTED_STATES,
    TERMINAL_STATES,
    is_valid_transition,
)
from tests.conftest import FIXED_NOW


async def _transitions(db_session, conversation_id: int) -> list[StateTransition]:
    result = await db_session.execute(
        select(StateTransition)
        .where(StateTransition.conversation_id == conversation_id)
        .order_by(StateTransition.id)
    )
    return list(result.scalars().all())


class TestTransitionTable:

    @pytest.mark.unit
    def test_every_state_has_entry(self):
        assert set(LEAD_TRANSITIONS) == set(LeadState)

    @pytest.mark.unit
    def test_archived_is_final(self):
        assert LEAD_TRANSITIONS[LeadState.ARCHIVED] == []

    @pytest.mark.unit
    def test_any_live_state_can_die(self):
        for state in LeadState:
            if state in TERMINAL_STATES:
                continue
            assert LeadState.DEAD in LEAD_TRANSITIONS[state], state

    @pytest.mark.unit
    def test_drip_cannot_skip_to_submission(self):
        assert not is_valid_transition("DRIP", "READY_TO_SUBMIT")
        assert not is_valid_transition("NEW", "SUBMITTED")

    @pytest.mark.unit
    def test_unknown_state_is_invalid(self):
        assert not is_valid_transition("ACTIVE", "BOGUS")
        assert not is_valid_transition("BOGUS", "ACTIVE")

    @pytest.mark.unit
    def test_restricted_and_protected_sets(self):
        assert RESTRICTED_STATES == {LeadState.READY_TO_SUBMIT, LeadState.OFFER_RECEIVED}
        assert PROTECTED_STATES == {LeadState.DEAD, LeadState.SUBMITTED, LeadState.ARCHIVED}


class TestStateManager:

    @pytest.mark.unit
    async def test_valid_transition_writes_audit_and_resets(self, db_session, conversation_factory):
        conversation = await conversation_factory(
            state="DRIP",
            nudge_count=3,
            last_activity=FIXED_NOW - timedelta(hours=2),
        )

        changed = await StateManager(db_session).transition_to(
            conversation, LeadState.ACTIVE, "system", FIXED_NOW
        )
        await db_session.commit()

        assert changed is True
        assert conversation.state == "ACTIVE"
        assert conversation.nudge_count == 0
        assert conversation.last_activity == FIXED_NOW

        rows = await _transitions(db_session, conversation.id)
        assert len(rows) == 1
        assert (rows[0].old_state, rows[0].new_state, rows[0].changed_by) == ("DRIP", "ACTIVE", "system")

    @pytest.mark.unit
    async def test_same_state_is_noop(self, db_session, conversation_factory):
        """מעבר למצב הנוכחי - אין שורת audit ואין איפוס"""
        conversation = await conversation_factory(state="ACTIVE", nudge_count=2)

        changed = await StateManager(db_session).transition_to(
            conversation, LeadState.ACTIVE, "ai", FIXED_NOW
        )
        await db_session.commit()

        assert changed is False
        assert conversation.nudge_count == 2
        assert await _transitions(db_session, conversation.id) == []

    @pytest.mark.unit
    async def test_invalid_transition_rejected(self, db_session, conversation_factory):
        """מעבר לא חוקי נרשם בלוג ומוחזר False, בלי חריגה ובלי שורת audit"""
        conversation = await conversation_factory(state="DEAD")

        changed = await StateManager(db_session).transition_to(
            conversation, LeadState.ACTIVE, "ai", FIXED_NOW
        )

        assert changed is False
        assert conversation.state == "DEAD"
        assert await _transitions(db_session, conversation.id) == []

    @pytest.mark.unit
    async def test_force_state_bypasses_validation(self, db_session, conversation_factory):
        conversation = await conversation_factory(state="NEW")

        changed = await StateManager(db_session).force_state(
            conversation, LeadState.SUBMITTED, "human", FIXED_NOW
        )
        await db_session.commit()

        assert changed is True
        assert conversation.state == "SUBMITTED"
        rows = await _transitions(db_session, conversation.id)
        assert rows[0].changed_by == "human"

    @pytest.mark.unit
    async def test_force_state_same_state_is_noop(self, db_session, conversation_factory):
        conversation = await conversation_factory(state="ACTIVE")

        assert await StateManager(db_session).force_state(
            conversation, LeadState.ACTIVE, "human", FIXED_NOW
        ) is False
