"""
ממשק בסיסי לספק SMS - Dependency Inversion.

כל ספק חייב לממש את הממשק הזה; MessageDispatcher תלוי רק בו.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod

_NON_DIGITS_RE = re.compile(r"\D")

MIN_PHONE_DIGITS = 10


class BaseSmsProvider(ABC):
    """
    ממשק אחיד לשליחת SMS.

    כל מימוש אחראי על:
    - שליחת HTTP / SDK
    - retry + circuit breaker
    - נרמול טלפון לפורמט הנדרש ע"י הספק
    """

    @abstractmethod
    async def send_text(self, to: str, text: str) -> str:
        """
        שליחת הודעת טקסט.

        Args:
            to: מספר טלפון (כבר מנורמל ע"י normalize_phone).
            text: טקסט ההודעה - נשלח as-is.

        Returns:
            מזהה ההודעה אצל הספק.

        Raises:
            SmsGatewayError: בכשלון שליחה.
        """

    def is_deliverable(self, phone: str | None) -> bool:
        """At least 10 digits; anything shorter cannot be texted."""
        return len(_NON_DIGITS_RE.sub("", phone or "")) >= MIN_PHONE_DIGITS

    def normalize_phone(self, phone: str) -> str:
        """
        נרמול מספר טלפון לפורמט E.164 (ברירת מחדל: צפון אמריקה).

        לדוגמה:
        - "(555) 123-4567" → "+15551234567"
        - "15551234567" → "+15551234567"
        """
        digits = _NON_DIGITS_RE.sub("", phone)
        if phone.strip().startswith("+"):
            return f"+{digits}"
        if len(digits) == 10:
            return f"+1{digits}"
        return f"+{digits}"

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""
