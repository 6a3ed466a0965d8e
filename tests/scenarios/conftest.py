"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שלוש הלולאות (drip / reply / nudge) על אותו session, oracle, ספק SMS ושעון
- lead_replies - הודעה נכנסת בזמן השעון של הבדיקה
- פונקציות אימות (יומן הודעות, מצב ליד, לוג החלטות)
"""
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.decision_log import DecisionLog
from app.db.models.message import Message
from app.domain.services.claim_service import load_conversation
from app.domain.services.drip_service import DripLoop
from app.domain.services.message_service import MessageService
from app.domain.services.nudge_loop_service import NudgeLoop
from app.domain.services.reply_loop_service import ReplyLoop


# ============================================================================
# Loops
# ============================================================================


@pytest.fixture
def drip_loop(db_session, dispatcher, no_sleep, clock) -> DripLoop:
    return DripLoop(db_session, dispatcher=dispatcher, sleep=no_sleep, clock=clock)


@pytest.fixture
def reply_loop(db_session, lead_agent, no_sleep, clock) -> ReplyLoop:
    return ReplyLoop(db_session, agent=lead_agent, sleep=no_sleep, clock=clock)


@pytest.fixture
def nudge_loop(db_session, lead_agent, no_sleep, clock) -> NudgeLoop:
    return NudgeLoop(db_session, agent=lead_agent, sleep=no_sleep, clock=clock)


# ============================================================================
# Helpers
# ============================================================================


async def lead_replies(db: AsyncSession, conversation_id: int, text: str, clock) -> Message:
    """הליד שולח הודעה עכשיו (לפי שעון הבדיקה) - כמו ה-webhook הנכנס"""
    conversation = await load_conversation(db, conversation_id)
    return await MessageService(db).record_inbound(conversation, text, now=clock.now)


async def message_log(db: AsyncSession, conversation_id: int) -> list[tuple[str, str, str]]:
    """(direction, sent_by, content) לפי סדר כרונולוגי"""
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.asc(), Message.id.asc())
    )
    return [
        (message.direction.value, message.sent_by.value, message.content)
        for message in result.scalars().all()
    ]


async def decision_actions(db: AsyncSession, conversation_id: int) -> list[str]:
    result = await db.execute(
        select(DecisionLog.action)
        .where(DecisionLog.conversation_id == conversation_id)
        .order_by(DecisionLog.id.asc())
    )
    return list(result.scalars().all())


async def assert_lead(db: AsyncSession, conversation_id: int, *, state: str, nudge_count: int | None = None):
    conversation = await load_conversation(db, conversation_id)
    assert conversation.state == state, f"מצב צפוי {state}, בפועל {conversation.state}"
    if nudge_count is not None:
        assert conversation.nudge_count == nudge_count
    assert conversation.processing_lock is False
    return conversation
