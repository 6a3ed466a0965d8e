"""
Conversation Model - one row per lead moving through the funnel
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from app.core.business_hours import utcnow
from app.db.database import Base


class Conversation(Base):
    """Lead record: funnel state, scheduling counters and the processing lock"""

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)

    # Lead identity
    business_name = Column(String(200), nullable=True)
    first_name = Column(String(100), nullable=True)
    lead_phone = Column(String(30), nullable=True)
    assigned_agent_name = Column(String(100), nullable=True)

    # State machine (LeadState value)
    state = Column(String(30), nullable=False, default="NEW", index=True)

    # Scheduling bookkeeping
    nudge_count = Column(Integer, nullable=False, default=0)
    stall_count = Column(Integer, nullable=False, default=0)
    last_activity = Column(DateTime, default=utcnow, index=True)
    wait_until = Column(DateTime, nullable=True)
    pending_question = Column(Text, nullable=True)
    ai_enabled = Column(Boolean, nullable=False, default=True)

    # Decision bookkeeping
    last_ai_decision = Column(String(30), nullable=True)
    last_ai_decision_at = Column(DateTime, nullable=True)
    # מזהה ההודעה הנכנסת האחרונה שכבר קיבלה החלטה - שער אידמפוטנטיות
    last_processed_message_id = Column(Integer, nullable=True)

    # Processing lock (compare-and-set) + lease start
    processing_lock = Column(Boolean, nullable=False, default=False, index=True)
    processing_lock_at = Column(DateTime, nullable=True)

    # Written by the external analysis job: {"strategy": "...", "offers": [...]}
    strategy_context = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
