"""
HTTP Decision Oracle - posts the context to a remote decision service.

The remote side owns the model/vendor; this client owns timeouts, the
circuit breaker and tolerant parsing of whatever comes back.
"""
from __future__ import annotations

from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import OracleError, ServiceTimeoutError
from app.core.logging import get_logger
from app.domain.services.oracle.base_oracle import (
    BaseDecisionOracle,
    OracleContext,
    OracleDecision,
)

logger = get_logger(__name__)


class HttpDecisionOracle(BaseDecisionOracle):
    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._url = url or settings.ORACLE_URL
        self._api_key = settings.ORACLE_API_KEY if api_key is None else api_key
        self._timeout = timeout_seconds or settings.ORACLE_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return "http"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(self._url, json=payload, headers=self._headers())
            except httpx.TimeoutException:
                raise ServiceTimeoutError("oracle", self._timeout)
            except httpx.RequestError as exc:
                raise OracleError(
                    message=f"network error: {str(exc)}",
                    details={"network_error": True},
                )
        if response.status_code != 200:
            raise OracleError.from_response("decide", response)
        return response

    async def decide(self, context: OracleContext) -> OracleDecision:
        payload = context.model_dump(mode="json")
        response = await self._circuit_breaker.execute(self._post, payload)

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        # השירות מחזיר {"decision": {...}} או את ההחלטה עצמה / טקסט גולמי
        if isinstance(body, dict) and "decision" in body:
            body = body["decision"]

        decision = OracleDecision.parse_output(body)
        logger.info(
            "Oracle decision received",
            extra_data={
                "conversation_id": context.conversation_id,
                "action": decision.action.value,
                "has_message": bool(decision.message),
            },
        )
        return decision
