"""
Intent Matcher (Layer 1) - deterministic trigger-phrase matching.

Responsibility:
- Match an utterance against a domain's trigger phrases in configuration order
- Case- and accent-insensitive substring matching
- Never calls a model
"""

import logging
import re
import unicodedata
from typing import Iterable

from shared.models import IntentOutput, TriggerPhrase, normalize_intent_name

logger = logging.getLogger(__name__)


def normalize_text(text: str) -> str:
    """Lower-case, strip accents, collapse whitespace."""
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


class IntentMatcher:
    """Zero-latency trigger phrase matcher."""

    def match(self, utterance: str, triggers: Iterable[TriggerPhrase]) -> IntentOutput | None:
        """First trigger whose phrase is contained in the utterance, else None."""
        text = normalize_text(utterance)
        if not text:
            return None
        for trigger in triggers:
            phrase = normalize_text(trigger.phrase)
            if phrase and phrase in text:
                logger.info("Trigger '%s' matched intent '%s'", trigger.phrase, trigger.intent)
                return IntentOutput(
                    intent=normalize_intent_name(trigger.intent),
                    entities={},
                    confidence=1.0,
                    source="trigger",
                    original_query=utterance,
                )
        return None
