"""
Stall Detector - counts non-committal deferrals and picks the escalation level.

stall_count is separate from nudge_count: it only grows on a detected
deferral and only resets when the lead says something genuinely new.
"""
from __future__ import annotations

from enum import Enum

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.conversation import Conversation
from app.domain.services.classifiers import BaseMessageClassifier, get_classifier

logger = get_logger(__name__)

BREAKUP_MESSAGE = "hey i don't want to keep bugging you. should i just close your file?"

_LIGHT_GUIDANCE = (
    "The lead is deferring. Keep it light and low-pressure, "
    "acknowledge them and leave the door open."
)
_URGENCY_GUIDANCE = (
    "The lead has deferred {count} times. Create gentle urgency: "
    "the offer terms will not hold forever, ask for a concrete next step."
)


class StallLevel(str, Enum):
    NONE = "none"
    LIGHT = "light"
    URGENCY = "urgency"
    BREAKUP = "breakup"


def stall_level(stall_count: int) -> StallLevel:
    if stall_count >= settings.STALL_BREAKUP_THRESHOLD:
        return StallLevel.BREAKUP
    if stall_count >= settings.STALL_URGENCY_THRESHOLD:
        return StallLevel.URGENCY
    if stall_count >= settings.STALL_LIGHT_THRESHOLD:
        return StallLevel.LIGHT
    return StallLevel.NONE


def stall_guidance(stall_count: int) -> str | None:
    """Instruction appended to the oracle context, None when there is nothing to say."""
    level = stall_level(stall_count)
    if level == StallLevel.LIGHT:
        return _LIGHT_GUIDANCE
    if level in (StallLevel.URGENCY, StallLevel.BREAKUP):
        return _URGENCY_GUIDANCE.format(count=stall_count)
    return None


class StallDetector:
    def __init__(self, classifier: BaseMessageClassifier | None = None):
        self.classifier = classifier or get_classifier()

    def register_inbound(self, conversation: Conversation, text: str | None) -> bool:
        """
        Update stall_count for a new inbound message.

        Returns True when the message was a deferral (counter incremented).
        """
        if self.classifier.is_stall(text):
            conversation.stall_count = (conversation.stall_count or 0) + 1
            logger.info(
                "Stall detected in lead message",
                extra_data={
                    "conversation_id": conversation.id,
                    "stall_count": conversation.stall_count,
                },
            )
            return True

        if self.classifier.is_genuine(text) and conversation.stall_count:
            logger.info(
                "Lead re-engaged, stall count reset",
                extra_data={
                    "conversation_id": conversation.id,
                    "previous_stall_count": conversation.stall_count,
                },
            )
            conversation.stall_count = 0
        return False

    def register_oracle_reason(
        self,
        conversation: Conversation,
        reason: str | None,
        already_counted: bool,
    ) -> bool:
        """The oracle's stated reason can reveal a stall the keywords missed in the lead text."""
        if already_counted or not self.classifier.is_stall(reason):
            return False
        conversation.stall_count = (conversation.stall_count or 0) + 1
        logger.info(
            "Stall detected in oracle reason",
            extra_data={
                "conversation_id": conversation.id,
                "stall_count": conversation.stall_count,
            },
        )
        return True
