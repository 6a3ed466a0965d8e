"""
Database Models
"""
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageDirection, MessageStatus, SentBy
from app.db.models.lead_fact import LeadFact
from app.db.models.state_transition import StateTransition
from app.db.models.decision_log import DecisionLog

__all__ = [
    "Conversation",
    "Message",
    "MessageDirection",
    "MessageStatus",
    "SentBy",
    "LeadFact",
    "StateTransition",
    "DecisionLog",
]
