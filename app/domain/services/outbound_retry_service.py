"""
Failed Outbound Retry - resends AI/drip messages left FAILED by the dispatcher.

next_retry_at is set by the dispatcher with exponential backoff; a message is
abandoned when it ran out of retries or the lead wrote something newer.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.business_hours import is_within_business_hours, utcnow
from app.core.config import settings
from app.core.logging import bind_conversation, get_logger, log_async_operation
from app.db.models.message import Message, MessageDirection, MessageStatus, SentBy
from app.domain.services.claim_service import ClaimService, load_conversation
from app.domain.services.dispatch_service import MessageDispatcher
from app.domain.services.message_service import MessageService

logger = get_logger(__name__)

RETRY_BATCH_LIMIT = 50


class OutboundRetryService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        dispatcher: MessageDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.dispatcher = dispatcher or MessageDispatcher(db)
        self.claims = ClaimService(db)
        self.messages = MessageService(db)

    async def find_due(self, now: datetime) -> list[Message]:
        result = await self.db.execute(
            select(Message)
            .where(
                Message.direction == MessageDirection.OUTBOUND,
                Message.status == MessageStatus.FAILED,
                Message.sent_by.in_([SentBy.AI, SentBy.DRIP]),
                Message.next_retry_at.is_not(None),
                Message.next_retry_at <= now,
                Message.retry_count <= settings.OUTBOUND_MAX_RETRIES,
            )
            .order_by(Message.next_retry_at.asc())
            .limit(RETRY_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    @log_async_operation("outbound_retry_pass")
    async def run_once(self) -> int:
        """Returns the number of messages delivered on retry."""
        now = self.clock()
        if not is_within_business_hours(now):
            return 0

        delivered = 0
        for message in await self.find_due(now):
            try:
                if await self.retry(message, now):
                    delivered += 1
            except Exception as exc:
                logger.error(
                    "Outbound retry failed",
                    extra_data={"message_id": message.id, "error": str(exc)},
                    exc_info=True,
                )
        return delivered

    async def retry(self, message: Message, now: datetime) -> bool:
        conversation_id = message.conversation_id
        with bind_conversation(conversation_id):
            async with self.claims.claimed(conversation_id, now) as is_claimed:
                if not is_claimed:
                    return False
                conversation = await load_conversation(self.db, conversation_id)
                if conversation is None:
                    return False

                if await self.messages.has_inbound_after(conversation_id, message.id):
                    message.next_retry_at = None
                    message.last_error = "superseded by a newer inbound message"
                    await self.db.commit()
                    logger.info(
                        "Failed message superseded, retry abandoned",
                        extra_data={"message_id": message.id},
                    )
                    return False

                await self.dispatcher.resend(conversation, message, now)
                return message.status == MessageStatus.SENT
