"""
Message Dispatcher - the only path by which an outbound SMS leaves the system.

Order of operations:
1. Validate the delivery channel (phone). No channel = permanent failure.
2. Persist the message as PENDING and commit, so a crash mid-send leaves a trace.
3. Send through the SMS provider.
4. Mark SENT (stamp last_activity, publish event) or FAILED (schedule a retry).
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import utcnow
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    NoDeliveryChannelError,
    SmsGatewayError,
)
from app.core.logging import get_logger, mask_phone
from app.core.redis_client import publish_event
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, MessageStatus, SentBy
from app.domain.services.backoff import calculate_backoff_seconds
from app.domain.services.messaging import BaseSmsProvider, get_sms_provider

logger = get_logger(__name__)


class MessageDispatcher:
    def __init__(self, db: AsyncSession, provider: BaseSmsProvider | None = None):
        self.db = db
        self.provider = provider or get_sms_provider()

    def _ensure_deliverable(self, conversation: Conversation) -> None:
        if not self.provider.is_deliverable(conversation.lead_phone):
            logger.error(
                "No delivery channel for conversation",
                extra_data={
                    "conversation_id": conversation.id,
                    "phone": mask_phone(conversation.lead_phone),
                },
            )
            raise NoDeliveryChannelError(conversation.id)

    async def send(
        self,
        conversation: Conversation,
        text: str,
        sent_by: SentBy,
        now: datetime | None = None,
    ) -> Message:
        """
        Send one outbound message.

        Returns the persisted Message (status SENT or FAILED).

        Raises:
            NoDeliveryChannelError: the lead has no usable phone; nothing is persisted.
        """
        self._ensure_deliverable(conversation)
        now = now or utcnow()

        message = Message(
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            content=text,
            sent_by=sent_by,
            status=MessageStatus.PENDING,
            timestamp=now,
        )
        self.db.add(message)
        await self.db.commit()
        await self.db.refresh(message)

        return await self._deliver(conversation, message, now)

    async def resend(self, conversation: Conversation, message: Message, now: datetime | None = None) -> Message:
        """Retry a FAILED message in place (same row, same content)."""
        self._ensure_deliverable(conversation)
        return await self._deliver(conversation, message, now or utcnow())

    async def _deliver(self, conversation: Conversation, message: Message, now: datetime) -> Message:
        try:
            provider_id = await self.provider.send_text(conversation.lead_phone, message.content)
        except (SmsGatewayError, CircuitBreakerOpenError) as exc:
            self._mark_failed(message, str(exc), now)
            await self.db.commit()
            logger.error(
                "Outbound message failed",
                extra_data={
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "retry_count": message.retry_count,
                    "next_retry_at": message.next_retry_at,
                    "error": str(exc),
                },
            )
            return message

        message.status = MessageStatus.SENT
        message.provider_message_id = provider_id or None
        message.next_retry_at = None
        message.last_error = None
        conversation.last_activity = now
        await self.db.commit()

        logger.info(
            "Outbound message sent",
            extra_data={
                "conversation_id": conversation.id,
                "message_id": message.id,
                "sent_by": message.sent_by.value,
                "provider": self.provider.provider_name,
            },
        )
        await self._publish_sent(conversation, message)
        return message

    def _mark_failed(self, message: Message, error: str, now: datetime) -> None:
        message.status = MessageStatus.FAILED
        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]
        if message.retry_count > settings.OUTBOUND_MAX_RETRIES:
            # מיצינו ניסיונות - נשאר FAILED בלי תזמון נוסף
            message.next_retry_at = None
            return
        backoff = calculate_backoff_seconds(
            message.retry_count,
            base_seconds=settings.OUTBOUND_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.OUTBOUND_MAX_BACKOFF_SECONDS,
        )
        message.next_retry_at = now + timedelta(seconds=backoff)

    async def _publish_sent(self, conversation: Conversation, message: Message) -> None:
        """אירוע בזמן אמת לממשק - כשל ב-Redis לא מכשיל את השליחה"""
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
            logger.warning(
                "Failed to publish message event",
                extra_data={"conversation_id": conversation.id, "error": str(exc)},
            )
