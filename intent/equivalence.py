"""
Semantic equivalence between two intent extractions.

Two results agree when their intents are equal after normalization and
every entity present in both normalizes to the same value for its
validation kind. Entities present in only one result are merged in.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping

from intent.matcher import normalize_text
from registry.validators import parse_confirmation, parse_date, validate_value
from shared.models import ValidatorKind, normalize_intent_name

logger = logging.getLogger(__name__)

UNKNOWN_INTENT = "unknown"

_DATE_KINDS = {ValidatorKind.DATE, ValidatorKind.FUTURE_DATE, ValidatorKind.PAST_DATE}


@dataclass
class ExtractionComparison:
    agree: bool
    intent: str
    entities: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    conflicting_entities: list[str] = field(default_factory=list)
    competing_intents: tuple[str, str] | None = None


def _fold(value: Any) -> str:
    text = normalize_text(str(value))
    return re.sub(r"[^\w\s]", "", text).strip()


def canonical_value(value: Any, kind: ValidatorKind | None, today: date) -> Any:
    """Normalized value used for merging; falls back to the trimmed raw value."""
    if kind is None or kind == ValidatorKind.STRING:
        return value.strip() if isinstance(value, str) else value
    try:
        # Past/future constraints are the validator's job later, not agreement's.
        effective = ValidatorKind.DATE if kind in _DATE_KINDS else kind
        return validate_value(effective, value, today)
    except (ValueError, KeyError):
        return value.strip() if isinstance(value, str) else value


def comparison_key(value: Any, kind: ValidatorKind | None, today: date) -> Any:
    """Key under which two values of the same kind compare equal."""
    if value is None:
        return None
    if kind in _DATE_KINDS:
        try:
            return parse_date(value, today).isoformat()
        except ValueError:
            return _fold(value)
    if kind == ValidatorKind.CONFIRMATION:
        parsed = parse_confirmation(value)
        return parsed if parsed is not None else _fold(value)
    if kind is not None and kind not in (ValidatorKind.STRING, ValidatorKind.NAME):
        canonical = canonical_value(value, kind, today)
        if isinstance(canonical, (dict, list)):
            return repr(canonical)
        if isinstance(canonical, float) and canonical.is_integer():
            return int(canonical)
        return canonical if not isinstance(canonical, str) else _fold(canonical)
    return _fold(value)


def values_equivalent(first: Any, second: Any, kind: ValidatorKind | None, today: date) -> bool:
    if comparison_key(first, kind, today) == comparison_key(second, kind, today):
        return True
    if kind is None:
        # Untyped entity: "next Tuesday" and "2025-01-07" still mean the same day.
        try:
            return parse_date(first, today) == parse_date(second, today)
        except ValueError:
            return False
    return False


def compare_extractions(
    first: Mapping[str, Any],
    second: Mapping[str, Any],
    entity_kinds: Mapping[str, ValidatorKind],
    today: date,
) -> ExtractionComparison:
    """Apply the equivalence predicate to two ``{intent, entities, confidence}`` payloads."""
    intent_a = normalize_intent_name(first.get("intent", ""))
    intent_b = normalize_intent_name(second.get("intent", ""))
    entities_a = first.get("entities") if isinstance(first.get("entities"), dict) else {}
    entities_b = second.get("entities") if isinstance(second.get("entities"), dict) else {}
    confidence = min(_confidence(first), _confidence(second))

    competing = None
    if not intent_a or intent_a != intent_b or intent_a == UNKNOWN_INTENT:
        competing = (intent_a or UNKNOWN_INTENT, intent_b or UNKNOWN_INTENT)

    merged: dict[str, Any] = {}
    conflicts: list[str] = []
    for name in list(entities_a.keys()) + [key for key in entities_b.keys() if key not in entities_a]:
        kind = entity_kinds.get(name)
        value_a = entities_a.get(name)
        value_b = entities_b.get(name)
        if value_a is None and value_b is None:
            continue
        if value_a is not None and value_b is not None:
            if not values_equivalent(value_a, value_b, kind, today):
                conflicts.append(name)
                continue
        chosen = value_a if value_a is not None else value_b
        merged[name] = canonical_value(chosen, kind, today)

    agree = competing is None and not conflicts
    if not agree:
        logger.info("Extractions disagree: intents=%s conflicts=%s", competing, conflicts)
    return ExtractionComparison(
        agree=agree,
        intent=intent_a if competing is None else "",
        entities=merged,
        confidence=confidence,
        conflicting_entities=conflicts,
        competing_intents=competing,
    )


def _confidence(payload: Mapping[str, Any]) -> float:
    try:
        value = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        value = 0.0
    return max(0.0, min(1.0, value))
