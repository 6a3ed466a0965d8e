"""
תרחיש 1 - cold outreach: hook, follow-ups מדורגים, תשובה ו-nudge

מכסה:
- hook פותח לליד חדש, ואז follow-ups אחרי 15 דק' / 30 דק' / שעה / 4 שעות
- עצירה אחרי 4 ניסיונות
- תשובה באמצע ה-drip: מעבר ל-ACTIVE, תגובה אחרי השהיה אנושית, ה-drip נעצר
- ליד ששתק אחרי התגובה מקבל nudge
- "thanks" על הודעה שאינה שאלה: אין תגובה מיידית, ה-nudge ממשיך משם
"""
from datetime import timedelta

import pytest

from app.core.config import settings
from app.domain.services.drip_service import DRIP_TEMPLATES, render_opening_hook
from app.domain.services.claim_service import load_conversation
from app.domain.services.oracle import OracleAction
from tests.conftest import FIXED_NOW
from tests.scenarios.conftest import (
    assert_lead,
    decision_actions,
    lead_replies,
    message_log,
)


@pytest.fixture
async def new_lead(conversation_factory):
    return await conversation_factory(
        state="NEW",
        first_name="JOHN",
        created_at=FIXED_NOW - timedelta(minutes=5),
        last_activity=FIXED_NOW - timedelta(minutes=5),
    )


@pytest.mark.scenario
class TestDripSequence:
    """ליד שלא עונה לעולם - hook וארבעה follow-ups, ואז שקט"""

    async def test_full_sequence_then_halt(self, db_session, drip_loop, new_lead, clock, fake_sms, fake_oracle):
        conversation_id = new_lead.id
        hook = render_opening_hook(new_lead)

        assert await drip_loop.run_once() == 1
        await assert_lead(db_session, conversation_id, state="DRIP", nudge_count=0)

        # לפני ש-15 דקות עברו - כלום
        clock.advance(minutes=14)
        assert await drip_loop.run_once() == 0

        clock.advance(minutes=1)
        assert await drip_loop.run_once() == 1
        for wait in (timedelta(minutes=30), timedelta(hours=1), timedelta(hours=4)):
            clock.now += wait
            assert await drip_loop.run_once() == 1

        await assert_lead(db_session, conversation_id, state="DRIP", nudge_count=settings.DRIP_MAX_ATTEMPTS)

        clock.advance(days=1)
        assert await drip_loop.run_once() == 0

        assert fake_sms.texts == [hook, *DRIP_TEMPLATES]
        assert fake_oracle.calls == 0
        assert await decision_actions(db_session, conversation_id) == ["opening_hook"] + ["drip_followup"] * 4


@pytest.mark.scenario
class TestReplyDuringDrip:
    """הליד עונה אחרי ה-follow-up הראשון"""

    async def test_reply_moves_to_active_and_nudge_follows(
        self, db_session, drip_loop, reply_loop, nudge_loop, new_lead, clock, fake_sms, fake_oracle, no_sleep
    ):
        conversation_id = new_lead.id

        await drip_loop.run_once()
        clock.advance(minutes=15)
        await drip_loop.run_once()

        clock.advance(minutes=5)
        inbound = await lead_replies(db_session, conversation_id, "not yet. what kind of rates do you offer?", clock)

        # תקופת השקט לא עברה - עדיין לא מגיבים
        assert await reply_loop.run_once() == []

        clock.advance(minutes=3)
        results = await reply_loop.run_once()

        assert [result.action for result in results] == ["respond"]
        assert results[0].sent is True
        delay = no_sleep.await_args_list[-1].args[0]
        assert settings.HUMAN_DELAY_MIN_SECONDS <= delay <= settings.HUMAN_DELAY_MAX_SECONDS

        conversation = await assert_lead(db_session, conversation_id, state="ACTIVE", nudge_count=0)
        assert conversation.last_processed_message_id == inbound.id
        assert fake_oracle.calls == 1

        # ה-drip לא ממשיך לליד שענה
        clock.advance(hours=1)
        assert await drip_loop.run_once() == 0

        fake_oracle.will_return(action=OracleAction.RESPOND, message="just checking in, want me to run the numbers?")
        results = await nudge_loop.run_once()

        assert [result.sent for result in results] == [True]
        await assert_lead(db_session, conversation_id, state="ACTIVE", nudge_count=1)

        log = await message_log(db_session, conversation_id)
        assert [(direction, sent_by) for direction, sent_by, _ in log] == [
            ("outbound", "drip"),
            ("outbound", "drip"),
            ("inbound", "customer"),
            ("outbound", "ai"),
            ("outbound", "ai"),
        ]
        assert log[-1][2] == "just checking in, want me to run the numbers?"
        assert len(fake_sms.sent) == 4


@pytest.mark.scenario
class TestAcknowledgementDuringDrip:

    async def test_thanks_not_answered_then_nudged(
        self, db_session, drip_loop, reply_loop, nudge_loop, new_lead, clock, fake_sms, fake_oracle
    ):
        conversation_id = new_lead.id

        await drip_loop.run_once()
        clock.advance(minutes=15)
        await drip_loop.run_once()
        clock.advance(minutes=30)
        await drip_loop.run_once()
        # "The money is expensive as is let me compete." - לא שאלה
        assert fake_sms.texts[-1] == DRIP_TEMPLATES[1]

        clock.advance(minutes=2)
        await lead_replies(db_session, conversation_id, "thanks", clock)
        clock.advance(minutes=3)
        results = await reply_loop.run_once()

        assert [result.action for result in results] == ["acknowledged"]
        assert fake_oracle.calls == 0
        assert len(fake_sms.sent) == 3
        await assert_lead(db_session, conversation_id, state="ACTIVE", nudge_count=0)

        # ההודעה סומנה כמעובדת - לולאת התגובה לא חוזרת אליה
        clock.advance(minutes=1)
        assert await reply_loop.run_once() == []

        clock.advance(minutes=20)
        fake_oracle.will_return(action=OracleAction.RESPOND, message="when would be a good time for a quick call?")
        results = await nudge_loop.run_once()

        assert [result.sent for result in results] == [True]
        conversation = await load_conversation(db_session, conversation_id)
        assert conversation.nudge_count == 1
        assert fake_sms.texts[-1] == "when would be a good time for a quick call?"
