"""
Rule-based Decision Oracle - deterministic, no network.

Used when ORACLE_PROVIDER=rules (local development, dry runs, tests).
"""
from __future__ import annotations

from app.domain.services.classifiers import get_classifier, normalize
from app.domain.services.fact_service import EMAIL, PITCH_ACCEPTED
from app.domain.services.oracle.base_oracle import (
    BaseDecisionOracle,
    OracleAction,
    OracleContext,
    OracleDecision,
)

_NOT_INTERESTED = ("not interested", "stop", "remove me", "unsubscribe", "wrong number")
_ACCEPTANCE = ("lets do it", "let's do it", "send it over", "i'm in", "im in", "works for me")

NUDGE_MESSAGE = "hey just checking back in, still want me to look at numbers for you?"


class RuleBasedOracle(BaseDecisionOracle):
    @property
    def provider_name(self) -> str:
        return "rules"

    async def decide(self, context: OracleContext) -> OracleDecision:
        if context.manual_instruction:
            return OracleDecision(
                action=OracleAction.RESPOND,
                message=context.manual_instruction,
                reason="manual instruction relayed",
            )

        if context.is_nudge:
            return OracleDecision(action=OracleAction.RESPOND, message=NUDGE_MESSAGE, reason="nudge")

        inbound = [m for m in context.history if m.get("direction") == "inbound"]
        latest = normalize(inbound[-1]["content"]) if inbound else ""
        classifier = get_classifier()

        if any(phrase in latest for phrase in _NOT_INTERESTED):
            return OracleDecision(action=OracleAction.MARK_DEAD, reason="lead opted out")

        if any(phrase in latest for phrase in _ACCEPTANCE):
            return OracleDecision(
                action=OracleAction.READY_TO_SUBMIT,
                message="perfect, give me a few to get everything together",
                reason="lead accepted",
                extracted_facts={PITCH_ACCEPTED: "true"},
            )

        if "@" in latest and "." in latest:
            email = next((token for token in latest.split() if "@" in token), None)
            return OracleDecision(
                action=OracleAction.QUALIFY,
                reason="email provided",
                extracted_facts={EMAIL: email},
            )

        if classifier.is_stall(latest):
            return OracleDecision(
                action=OracleAction.NO_RESPONSE,
                reason="lead is deferring, wait",
            )

        if classifier.is_question(latest):
            return OracleDecision(
                action=OracleAction.RESPOND,
                message="good question, let me pull that up for you",
                reason="lead asked a question",
            )

        if context.facts.get(EMAIL):
            return OracleDecision(action=OracleAction.SYNC_DRIVE, reason="check for new statements")

        return OracleDecision(
            action=OracleAction.RESPOND,
            message="got it. whats the best email to send the offer to?",
            pending_question="email",
            reason="collect email",
        )
