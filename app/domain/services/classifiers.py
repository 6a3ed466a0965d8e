"""
Message classifiers - acknowledgement / stall / affirmative / close-question.

Keyword matching is fuzzy by nature, so scheduling code only talks to
BaseMessageClassifier; a model-based detector can replace KeywordClassifier
through set_classifier() without touching the loops.
"""
from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod

_TRAILING_PUNCTUATION_RE = re.compile(r"[\s.!,]+$")
_WHITESPACE_RE = re.compile(r"\s+")
# "25k", "$40k" - הצעת מחיר בהודעה היוצאת
_AMOUNT_RE = re.compile(r"\d+k\b")

ACKNOWLEDGEMENTS = frozenset({
    "ok", "okay", "thanks", "thank you", "got it", "sounds good", "cool",
    "k", "ty", "thx", "appreciate it", "will do",
    "👍", "👌", "🙏", "✅",
})

STALL_PHRASES = (
    "i'll get back", "ill get back", "get back to you", "get back to me",
    "text you tomorrow", "call you tomorrow", "call me tomorrow",
    "let me think", "need to think", "give me a few days",
    "check with my partner", "talk to my partner", "check with my wife",
    "not right now", "maybe later", "reach out when ready",
    "ill reach out", "i'll reach out", "will let you know",
    "waiting to hear", "i'll text you", "ill text you",
)

AFFIRMATIVES = frozenset({"yes", "yeah", "yep", "sure", "go ahead", "ok", "okay"})

CLOSE_QUESTIONS = (
    "should i close the file",
    "should i close it out",
    "close this out?",
    "closing out the file",
    "close the file out?",
    "should i just close your file",
    "i should close this out",
)


def normalize(text: str | None) -> str:
    """Lowercase, collapse whitespace, normalize curly quotes, strip trailing punctuation."""
    if not text:
        return ""
    cleaned = text.replace("’", "'").replace("‘", "'").strip().lower()
    cleaned = _WHITESPACE_RE.sub(" ", cleaned)
    return _TRAILING_PUNCTUATION_RE.sub("", cleaned)


class BaseMessageClassifier(ABC):
    """ממשק אחיד לסיווג הודעות - כל מימוש חייב לספק את כל הפעולות."""

    @abstractmethod
    def is_acknowledgement(self, text: str | None) -> bool:
        """A content-free acknowledgement ("ok", "thanks", 👍)."""

    @abstractmethod
    def is_stall(self, text: str | None) -> bool:
        """A non-committal deferral ("let me think", "maybe later")."""

    @abstractmethod
    def is_affirmative(self, text: str | None) -> bool:
        """A plain yes."""

    @abstractmethod
    def asks_to_close(self, text: str | None) -> bool:
        """An outbound message asking whether to close the file."""

    def is_question(self, text: str | None) -> bool:
        return "?" in (text or "")

    def is_pitching(self, text: str | None) -> bool:
        """Outbound text that carries an offer; a "yes" to it is not a close confirmation."""
        lowered = (text or "").lower()
        return bool(_AMOUNT_RE.search(lowered)) or "offer" in lowered or "work for you" in lowered

    def is_genuine(self, text: str | None) -> bool:
        """New information: not empty, not a bare ack, not a deferral."""
        return bool(normalize(text)) and not self.is_acknowledgement(text) and not self.is_stall(text)


class KeywordClassifier(BaseMessageClassifier):
    """Phrase-list classifier used in production"""

    def is_acknowledgement(self, text: str | None) -> bool:
        return normalize(text) in ACKNOWLEDGEMENTS

    def is_stall(self, text: str | None) -> bool:
        lowered = normalize(text)
        return bool(lowered) and any(phrase in lowered for phrase in STALL_PHRASES)

    def is_affirmative(self, text: str | None) -> bool:
        return normalize(text) in AFFIRMATIVES

    def asks_to_close(self, text: str | None) -> bool:
        lowered = (text or "").replace("’", "'").lower()
        return any(phrase in lowered for phrase in CLOSE_QUESTIONS)


_classifier: BaseMessageClassifier | None = None
_lock = threading.Lock()


def get_classifier() -> BaseMessageClassifier:
    global _classifier
    if _classifier is None:
        with _lock:
            if _classifier is None:
                _classifier = KeywordClassifier()
    return _classifier


def set_classifier(classifier: BaseMessageClassifier | None) -> None:
    """Swap the active classifier (None restores the default on next use)."""
    global _classifier
    with _lock:
        _classifier = classifier
