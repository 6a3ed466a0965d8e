"""
Decision Oracle abstraction

The oracle is an opaque capability: given a conversation context it returns
the next action. Implementations (HTTP model service, deterministic rules)
are swappable through the factory.
"""
from app.domain.services.oracle.base_oracle import (
    BaseDecisionOracle,
    OracleAction,
    OracleContext,
    OracleDecision,
)
from app.domain.services.oracle.oracle_factory import get_decision_oracle, reset_oracle

__all__ = [
    "BaseDecisionOracle",
    "OracleAction",
    "OracleContext",
    "OracleDecision",
    "get_decision_oracle",
    "reset_oracle",
]
