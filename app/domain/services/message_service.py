"""
Message Log queries and inbound ingestion
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.logging import get_logger
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, MessageStatus, SentBy

logger = get_logger(__name__)


def _newest_first(query):
    return query.order_by(Message.timestamp.desc(), Message.id.desc())


class MessageService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def latest_messages(self, conversation_id: int, limit: int = 2) -> list[Message]:
        """Newest first."""
        result = await self.db.execute(
            _newest_first(select(Message).where(Message.conversation_id == conversation_id))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def latest_message(self, conversation_id: int) -> Message | None:
        messages = await self.latest_messages(conversation_id, limit=1)
        return messages[0] if messages else None

    async def latest_inbound(self, conversation_id: int) -> Message | None:
        result = await self.db.execute(
            _newest_first(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.direction == MessageDirection.INBOUND,
                )
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def last_outbound_before(
        self,
        conversation_id: int,
        before: Message | None = None,
    ) -> Message | None:
        """Latest outbound message, optionally only those older than `before`."""
        query = select(Message).where(
            Message.conversation_id == conversation_id,
            Message.direction == MessageDirection.OUTBOUND,
        )
        if before is not None:
            query = query.where(Message.id < before.id)
        result = await self.db.execute(_newest_first(query).limit(1))
        return result.scalar_one_or_none()

    async def recent_outbound(self, conversation_id: int, limit: int) -> list[Message]:
        """Latest outbound messages that were (or are being) sent. Newest first."""
        result = await self.db.execute(
            _newest_first(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.direction == MessageDirection.OUTBOUND,
                    Message.status != MessageStatus.FAILED,
                )
            ).limit(limit)
        )
        return list(result.scalars().all())

    async def history(self, conversation_id: int, limit: int) -> list[Message]:
        """Latest `limit` messages in chronological order."""
        messages = await self.latest_messages(conversation_id, limit=limit)
        messages.reverse()
        return messages

    async def has_inbound_after(self, conversation_id: int, message_id: int) -> bool:
        result = await self.db.execute(
            select(Message.id).where(
                Message.conversation_id == conversation_id,
                Message.direction == MessageDirection.INBOUND,
                Message.id > message_id,
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def has_inbound_since(self, conversation_id: int, since: datetime) -> bool:
        result = await self.db.execute(
            select(Message.id).where(
                Message.conversation_id == conversation_id,
                Message.direction == MessageDirection.INBOUND,
                Message.timestamp >= since,
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def record_inbound(
        self,
        conversation: Conversation,
        content: str,
        now: datetime | None = None,
    ) -> Message:
        """
        Append a customer message.

        Any inbound message resets nudge_count and stamps last_activity; the
        NEW/DRIP -> ACTIVE promotion happens when a scheduler pass observes it.
        """
        now = now or utcnow()
        message = Message(
            conversation_id=conversation.id,
            direction=MessageDirection.INBOUND,
            content=content,
            sent_by=SentBy.CUSTOMER,
            status=MessageStatus.DELIVERED,
            timestamp=now,
        )
        self.db.add(message)
        conversation.nudge_count = 0
        conversation.last_activity = now
        await self.db.commit()
        await self.db.refresh(message)

        logger.info(
            "Inbound message recorded",
            extra_data={"conversation_id": conversation.id, "message_id": message.id},
        )
        return message
