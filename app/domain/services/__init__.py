"""
Domain Services
"""
from app.domain.services.claim_service import ClaimService
from app.domain.services.decision_log_service import DecisionLogService
from app.domain.services.fact_service import FactService
from app.domain.services.message_service import MessageService

__all__ = [
    "ClaimService",
    "DecisionLogService",
    "FactService",
    "MessageService",
]
