"""
Intent Classifier
-----------------
Deterministic rules first, NLU collaborator only for what the rules miss.
Rules are evaluated in table order; the first match wins.
"""

from __future__ import annotations

import re
from typing import Callable, List, Optional, Protocol, Tuple

from leadsms.runtime import get_logger
from leadsms.schema import NLU_INTENTS, UNKNOWN_INTENT, Stage

logger = get_logger(__name__)


class IntentClassifier(Protocol):
    def classify(self, text: str, stage: Optional[Stage] = None) -> str:
        ...


# -----------------------------
# Lexicons
# -----------------------------
ESTIMATE = ("estimate", "quote", "how long", "how many hours", "hours", "duration", "ballpark")
SCHEDULING = ("option", "options", "available", "availability", "day", "days", "book", "slot", "slots", "schedule")
PRICING = ("price", "prices", "pricing", "cost", "costs", "rate", "rates", "fee", "fees", "how much")
SERVICES = ("rack", "racks", "shelf", "shelves", "shelving", "epoxy", "organize", "organizing", "clean", "cleanout",
            "storage", "donation", "donate", "trash", "junk")


def _words(words: Tuple[str, ...]) -> "re.Pattern[str]":
    return re.compile(r"\b(" + "|".join(map(re.escape, words)) + r")\b", re.IGNORECASE)


# (name, predicate(text, has_media), intent)
Rule = Tuple[str, Callable[[str, bool], bool], str]


def _text_rule(name: str, words: Tuple[str, ...], intent: str) -> Rule:
    pattern = _words(words)
    return (name, lambda text, _media: bool(pattern.search(text)), intent)


RULES: List[Rule] = [
    ("media", lambda _text, has_media: has_media, "ack_photos"),
    _text_rule("estimate", ESTIMATE, "estimate"),
    _text_rule("scheduling", SCHEDULING, "options"),
    _text_rule("pricing", PRICING, "pricing"),
    _text_rule("services", SERVICES, "faq"),
]


def match_rules(text: str, has_media: bool = False) -> Optional[str]:
    """Return the intent of the first matching rule, or None."""
    body = text or ""
    for _name, predicate, intent in RULES:
        if predicate(body, has_media):
            return intent
    return None


def classify_intent(
    text: str,
    *,
    has_media: bool = False,
    stage: Optional[Stage] = None,
    nlu: Optional[IntentClassifier] = None,
) -> str:
    """Standardized intent label for an inbound customer message."""
    intent = match_rules(text, has_media)
    if intent:
        return intent
    if nlu is None:
        return UNKNOWN_INTENT

    try:
        label = nlu.classify(text or "", stage)
    except Exception as exc:
        logger.warning("NLU classification failed: %s", exc)
        return UNKNOWN_INTENT

    label = (label or "").strip().lower()
    return label if label in NLU_INTENTS else UNKNOWN_INTENT
