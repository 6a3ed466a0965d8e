"""
SMS Provider Abstraction Layer

שכבת הפשטה לשליחת SMS - הלוגיקה העסקית תלויה רק בממשק ולא בספק.
"""
from app.domain.services.messaging.base_provider import BaseSmsProvider
from app.domain.services.messaging.provider_factory import get_sms_provider, reset_providers

__all__ = [
    "BaseSmsProvider",
    "get_sms_provider",
    "reset_providers",
]
