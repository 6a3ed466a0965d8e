"""
Inbound SMS webhook - the gateway posts every message a lead sends.

The message is appended to the log (nudge_count reset, last_activity stamped);
the reply loop picks it up on a later tick once the quiet period passed.
"""
import re

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_sms_webhook_secret
from app.core.logging import bind_conversation, get_logger, mask_phone
from app.core.redis_client import publish_event
from app.db.database import get_db
from app.db.models.conversation import Conversation
from app.domain.services.claim_service import load_conversation
from app.domain.services.message_service import MessageService

logger = get_logger(__name__)

router = APIRouter()

_NON_DIGITS_RE = re.compile(r"\D")


class InboundSms(BaseModel):
    """Gateway payload: {"from": "+15551234567", "body": "..."}; conversation_id optional."""

    model_config = ConfigDict(populate_by_name=True)

    from_number: str | None = Field(default=None, alias="from")
    body: str = Field(max_length=5000)
    conversation_id: int | None = None

    @model_validator(mode="after")
    def require_sender(self) -> "InboundSms":
        if self.conversation_id is None and not self.from_number:
            raise ValueError("either 'from' or 'conversation_id' is required")
        return self


def phone_variants(phone: str) -> set[str]:
    """Formats a lead phone may have been stored in."""
    digits = _NON_DIGITS_RE.sub("", phone)
    variants = {phone.strip(), digits, f"+{digits}"}
    if len(digits) == 11 and digits.startswith("1"):
        variants |= {digits[1:], f"+{digits}"}
    elif len(digits) == 10:
        variants |= {f"1{digits}", f"+1{digits}"}
    return variants


async def find_conversation(db: AsyncSession, payload: InboundSms) -> Conversation | None:
    if payload.conversation_id is not None:
        return await load_conversation(db, payload.conversation_id)
    result = await db.execute(
        select(Conversation)
        .where(or_(*(Conversation.lead_phone == variant for variant in phone_variants(payload.from_number))))
        .order_by(Conversation.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


@router.post("/inbound", summary="Inbound SMS from the gateway")
async def inbound_sms(
    payload: InboundSms,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(verify_sms_webhook_secret),
) -> dict:
    conversation = await find_conversation(db, payload)
    if conversation is None:
        # תמיד 200 ל-gateway - אחרת הוא ינסה שוב לנצח
        logger.warning(
            "Inbound SMS for unknown lead ignored",
            extra_data={"phone": mask_phone(payload.from_number)},
        )
        return {"status": "ignored"}

    with bind_conversation(conversation.id):
        message = await MessageService(db).record_inbound(conversation, payload.body)
        try:
            await publish_event(
                "new_message",
                {
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "direction": message.direction.value,
                    "sent_by": message.sent_by.value,
                    "content": message.content,
                    "timestamp": message.timestamp,
                },
            )
        except Exception as exc:
            logger.warning("Failed to publish inbound event", extra_data={"error": str(exc)})

    return {"status": "ok", "conversation_id": conversation.id, "message_id": message.id}
