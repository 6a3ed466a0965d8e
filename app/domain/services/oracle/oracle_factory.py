"""
Oracle Factory - one decision oracle per process, chosen by ORACLE_PROVIDER.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_oracle_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.oracle.base_oracle import BaseDecisionOracle

logger = get_logger(__name__)

_oracle: BaseDecisionOracle | None = None
_lock = threading.Lock()


def _create_oracle(provider_type: str) -> BaseDecisionOracle:
    if provider_type == "http":
        from app.domain.services.oracle.http_oracle import HttpDecisionOracle

        return HttpDecisionOracle(circuit_breaker=get_oracle_circuit_breaker())

    if provider_type == "rules":
        from app.domain.services.oracle.rule_oracle import RuleBasedOracle

        return RuleBasedOracle()

    raise ValueError(f"Unknown oracle provider: {provider_type}")


def get_decision_oracle() -> BaseDecisionOracle:
    global _oracle
    if _oracle is None:
        with _lock:
            if _oracle is None:
                _oracle = _create_oracle(settings.ORACLE_PROVIDER)
                logger.info("Decision oracle initialized", extra_data={"provider": _oracle.provider_name})
    return _oracle


def reset_oracle() -> None:
    """איפוס - לשימוש בבדיקות בלבד."""
    global _oracle
    with _lock:
        _oracle = None
