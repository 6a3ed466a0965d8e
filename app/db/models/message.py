"""
Message Model - append-only inbound/outbound history per conversation
"""
import enum
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Text

from app.core.business_hours import utcnow
from app.db.database import Base


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SentBy(str, enum.Enum):
    """Actor tag - the only signal the scheduler has about who wrote a message"""
    HUMAN = "human"
    AI = "ai"
    DRIP = "drip"
    CUSTOMER = "customer"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


class Message(Base):
    """One SMS in either direction, with delivery status and retry tracking"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)

    direction = Column(SQLEnum(MessageDirection), nullable=False)
    content = Column(Text, nullable=False, default="")
    sent_by = Column(SQLEnum(SentBy), nullable=False)
    status = Column(SQLEnum(MessageStatus), nullable=False, default=MessageStatus.PENDING, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True)

    # Outbound delivery tracking
    provider_message_id = Column(String(100), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)
