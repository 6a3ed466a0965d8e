"""
Provider Factory - ספק SMS יחיד לתהליך.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_sms_gateway_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.messaging.base_provider import BaseSmsProvider

logger = get_logger(__name__)

_provider: BaseSmsProvider | None = None
_lock = threading.Lock()


def get_sms_provider() -> BaseSmsProvider:
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                from app.domain.services.messaging.gateway_provider import GatewaySmsProvider

                _provider = GatewaySmsProvider(circuit_breaker=get_sms_gateway_circuit_breaker())
                logger.info("SMS provider initialized", extra_data={"provider": _provider.provider_name})
    return _provider


def reset_providers() -> None:
    """איפוס ספקים - לשימוש בבדיקות בלבד."""
    global _provider
    with _lock:
        _provider = None
