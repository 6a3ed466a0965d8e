"""
State Manager - applies funnel transitions and writes the audit trail
"""
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.logging import get_logger
from app.db.models.conversation import Conversation
from app.db.models.state_transition import StateTransition
from app.state_machine.states import LeadState, is_valid_transition

logger = get_logger(__name__)


class StateManager:
    """
    Moves a conversation between LeadStates.

    Every actual transition writes a StateTransition row, resets nudge
    bookkeeping and stamps last_activity. A transition to the current state
    is a logged no-op. Changes are added to the session; the caller commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def transition_to(
        self,
        conversation: Conversation,
        new_state: LeadState,
        changed_by: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Transition to a new state if valid.
        Returns True if a transition actually happened.
        """
        current_state = conversation.state

        if current_state == new_state.value:
            logger.debug(
                "State unchanged, skipping transition",
                extra_data={"conversation_id": conversation.id, "state": current_state},
            )
            return False

        if not is_valid_transition(current_state, new_state.value):
            logger.warning(
                "Invalid state transition attempted",
                extra_data={
                    "conversation_id": conversation.id,
                    "current_state": current_state,
                    "target_state": new_state.value,
                    "changed_by": changed_by,
                }
            )
            return False

        self._apply(conversation, new_state, changed_by, now)
        return True

    async def force_state(
        self,
        conversation: Conversation,
        new_state: LeadState,
        changed_by: str,
        now: datetime | None = None,
    ) -> bool:
        """Force state change without validation (manual operator action). Still audited."""
        if conversation.state == new_state.value:
            return False
        self._apply(conversation, new_state, changed_by, now)
        return True

    def _apply(
        self,
        conversation: Conversation,
        new_state: LeadState,
        changed_by: str,
        now: datetime | None,
    ) -> None:
        old_state = conversation.state
        self.db.add(StateTransition(
            conversation_id=conversation.id,
            old_state=old_state,
            new_state=new_state.value,
            changed_by=changed_by,
            timestamp=now or utcnow(),
        ))
        conversation.state = new_state.value
        conversation.nudge_count = 0
        conversation.last_activity = now or utcnow()

        logger.info(
            "Conversation state changed",
            extra_data={
                "conversation_id": conversation.id,
                "old_state": old_state,
                "new_state": new_state.value,
                "changed_by": changed_by,
            }
        )
