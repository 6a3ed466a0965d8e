"""
SMS Gateway Provider - מימוש BaseSmsProvider מעל HTTP gateway.

כולל retry עם exponential backoff לשגיאות זמניות ו-circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import SmsGatewayError
from app.core.logging import get_logger, mask_phone
from app.domain.services.messaging.base_provider import BaseSmsProvider

logger = get_logger(__name__)


class GatewaySmsProvider(BaseSmsProvider):
    """
    הגטוויי מספק:
    - POST /messages - {"to", "from", "body"} → {"id": "..."}
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._gateway_url = settings.SMS_GATEWAY_URL
        self._max_retries = settings.SMS_MAX_RETRIES
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.SMS_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return "sms_gateway"

    def _headers(self) -> dict[str, str]:
        headers = {}
        if settings.SMS_GATEWAY_TOKEN:
            headers["Authorization"] = f"Bearer {settings.SMS_GATEWAY_TOKEN}"
        return headers

    async def _retry_or_raise(self, attempt: int, log_message: str, extra: dict) -> bool:
        """ממתין ומחזיר True אם נשאר ניסיון; False אם זה היה האחרון."""
        if attempt >= self._max_retries - 1:
            return False
        backoff = 2 ** attempt
        logger.warning(log_message, extra_data={**extra, "attempt": attempt + 1, "backoff_seconds": backoff})
        await self._sleep(backoff)
        return True

    async def _request_with_retry(self, payload: dict) -> str:
        """זורק SmsGatewayError אם כל הניסיונות נכשלו."""
        phone_masked = mask_phone(payload.get("to"))

        async with httpx.AsyncClient(timeout=30.0) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.post(
                        f"{self._gateway_url}/messages",
                        json=payload,
                        headers=self._headers(),
                    )
                except httpx.TimeoutException:
                    if await self._retry_or_raise(attempt, "SMS send timeout, retrying", {"phone": phone_masked}):
                        continue
                    raise SmsGatewayError(
                        message="gateway /messages timeout after retries",
                        details={"timeout": True, "attempts": self._max_retries},
                    )
                except httpx.RequestError as exc:
                    if await self._retry_or_raise(
                        attempt, "SMS network error, retrying", {"phone": phone_masked, "error": str(exc)}
                    ):
                        continue
                    raise SmsGatewayError(
                        message=f"gateway /messages network error: {str(exc)}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

                if response.status_code in (200, 201, 202):
                    try:
                        return str(response.json().get("id", ""))
                    except ValueError:
                        return ""

                if response.status_code in self._transient_status_codes and await self._retry_or_raise(
                    attempt,
                    "Transient SMS gateway error, retrying",
                    {"phone": phone_masked, "status_code": response.status_code},
                ):
                    continue

                raise SmsGatewayError.from_response(
                    "messages",
                    response,
                    message=f"gateway /messages returned status {response.status_code}",
                )

        raise SmsGatewayError(message="no send attempt was made", details={"attempts": self._max_retries})

    async def send_text(self, to: str, text: str) -> str:
        payload = {
            "to": self.normalize_phone(to),
            "from": settings.SMS_FROM_NUMBER,
            "body": text,
        }
        return await self._circuit_breaker.execute(self._request_with_retry, payload)
