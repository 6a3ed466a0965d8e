"""
Messages API - operator (human) sends.

A message sent here is tagged sent_by=human; that tag is the only signal the
autonomous loops get that a person took over the conversation.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import ConversationNotFoundError, ValidationException
from app.core.logging import bind_conversation, get_logger
from app.db.database import get_db
from app.db.models.message import SentBy
from app.domain.services.claim_service import load_conversation
from app.domain.services.dispatch_service import MessageDispatcher

logger = get_logger(__name__)

router = APIRouter()


class HumanSendRequest(BaseModel):
    conversation_id: int
    text: str = Field(min_length=1, max_length=1600)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    direction: str
    sent_by: str
    status: str
    content: str
    timestamp: datetime | None = None


async def get_dispatcher(db: AsyncSession = Depends(get_db)) -> MessageDispatcher:
    return MessageDispatcher(db)


@router.post(
    "/send",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message as the human operator",
)
async def send_human_message(
    payload: HumanSendRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
    _: None = Depends(require_admin_api_key),
) -> MessageResponse:
    if not payload.text:
        raise ValidationException("text must not be blank", details={"field": "text"})

    conversation = await load_conversation(db, payload.conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(payload.conversation_id)

    with bind_conversation(conversation.id):
        message = await dispatcher.send(conversation, payload.text, SentBy.HUMAN)

    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        direction=message.direction.value,
        sent_by=message.sent_by.value,
        status=message.status.value,
        content=message.content,
        timestamp=message.timestamp,
    )
