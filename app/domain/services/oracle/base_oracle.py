"""
Decision Oracle interface and its structured output.
"""
from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.core.logging import get_logger

logger = get_logger(__name__)

FALLBACK_MESSAGE = "got it, give me one sec"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class OracleAction(str, Enum):
    RESPOND = "respond"
    QUALIFY = "qualify"
    MARK_DEAD = "mark_dead"
    SYNC_DRIVE = "sync_drive"
    NO_RESPONSE = "no_response"
    READY_TO_SUBMIT = "ready_to_submit"


class OracleDecision(BaseModel):
    """Structured next action returned by any oracle implementation."""

    action: OracleAction
    message: Optional[str] = None
    reason: Optional[str] = None
    pending_question: Optional[str] = None
    wait_until: Optional[datetime] = None
    extracted_facts: dict[str, Any] = Field(default_factory=dict)

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("message", "reason", "pending_question", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("wait_until", mode="before")
    @classmethod
    def tolerate_bad_wait_until(cls, v: Any) -> Any:
        """"null", "" or an unparsable value means no wait."""
        if v in (None, "", "null", "none"):
            return None
        if isinstance(v, str):
            try:
                parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed
        return v

    @field_validator("wait_until", mode="after")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("extracted_facts", mode="before")
    @classmethod
    def facts_as_dict(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @property
    def produces_message(self) -> bool:
        return bool(self.message) and self.action != OracleAction.NO_RESPONSE

    @classmethod
    def fallback(cls, reason: str) -> "OracleDecision":
        """Safe default when the oracle output cannot be used: a plain acknowledgement."""
        return cls(action=OracleAction.RESPOND, message=FALLBACK_MESSAGE, reason=reason)

    @classmethod
    def parse_output(cls, raw: Any) -> "OracleDecision":
        """
        Tolerant parser for raw oracle output (dict, JSON text, or JSON wrapped
        in prose / code fences). Malformed output yields the fallback decision.
        """
        payload: Any = raw
        if isinstance(raw, (str, bytes)):
            text = raw.decode() if isinstance(raw, bytes) else raw
            text = _CODE_FENCE_RE.sub("", text.strip())
            start, end = text.find("{"), text.rfind("}")
            if start == -1 or end <= start:
                logger.warning("Oracle output has no JSON object", extra_data={"raw": text[:200]})
                return cls.fallback("unparsable oracle output")
            try:
                payload = json.loads(text[start:end + 1])
            except json.JSONDecodeError as exc:
                logger.warning(
                    "Oracle output is not valid JSON",
                    extra_data={"error": str(exc), "raw": text[:200]},
                )
                return cls.fallback("unparsable oracle output")

        if not isinstance(payload, dict):
            return cls.fallback("oracle output is not an object")

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Oracle output failed validation",
                extra_data={"errors": exc.errors(include_url=False)[:3]},
            )
            return cls.fallback("invalid oracle output")


class OracleContext(BaseModel):
    """Everything the oracle gets to see. Serialized as-is for remote oracles."""

    conversation_id: int
    state: str
    lead_name: Optional[str] = None
    business_name: Optional[str] = None
    agent_name: Optional[str] = None
    history: list[dict[str, Any]] = Field(default_factory=list)
    facts: dict[str, str] = Field(default_factory=dict)
    offers: list[Any] = Field(default_factory=list)
    strategy: Optional[str] = None
    temporal_context: dict[str, Any] = Field(default_factory=dict)
    pending_question: Optional[str] = None
    stall_guidance: Optional[str] = None
    manual_instruction: Optional[str] = None
    is_nudge: bool = False


class BaseDecisionOracle(ABC):
    """Single-method interface: context in, decision out."""

    @abstractmethod
    async def decide(self, context: OracleContext) -> OracleDecision:
        """
        Decide the next action.

        Raises:
            OracleError / ServiceTimeoutError / CircuitBreakerOpenError on
            transient failures; the caller leaves the conversation eligible.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים."""
