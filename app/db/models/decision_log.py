"""
Decision Log Model - audit trail of every decision the scheduler took
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from app.core.business_hours import utcnow
from app.db.database import Base


class DecisionLog(Base):
    """Append-only: which guard or oracle action handled which inbound message"""

    __tablename__ = "decision_logs"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    source = Column(String(20), nullable=False)  # reply / nudge / manual / drip
    guard = Column(String(50), nullable=True)  # None = the oracle decided
    action = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    lead_message = Column(Text, nullable=True)
    response_sent = Column(Text, nullable=True)
    state_before = Column(String(30), nullable=True)
    state_after = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
