"""
Lead Fact Model - key/value facts extracted from a conversation (latest write wins)
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from app.core.business_hours import utcnow
from app.db.database import Base


class LeadFact(Base):
    __tablename__ = "lead_facts"
    __table_args__ = (
        UniqueConstraint("conversation_id", "fact_key", name="uq_lead_facts_conversation_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    fact_key = Column(String(100), nullable=False)
    fact_value = Column(Text, nullable=False)
    collected_at = Column(DateTime, default=utcnow, onupdate=utcnow)
