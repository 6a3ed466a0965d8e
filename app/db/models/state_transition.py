"""
State Transition Model - append-only audit of funnel state changes
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from app.core.business_hours import utcnow
from app.db.database import Base


class StateTransition(Base):
    """מי העביר את הליד מ-X ל-Y ומתי. לא נכתבת שורה כש-old == new."""

    __tablename__ = "state_transitions"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    old_state = Column(String(30), nullable=False)
    new_state = Column(String(30), nullable=False)
    changed_by = Column(String(50), nullable=False)  # reply_loop / drip / oracle / manual ...
    timestamp = Column(DateTime, default=utcnow, index=True)
