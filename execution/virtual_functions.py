"""In-process virtual functions: prompts, confirmations, option lists and id extraction."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from intent.matcher import normalize_text
from registry.validators import parse_index

logger = logging.getLogger(__name__)

_LABEL_KEYS = ("label", "name", "title", "description", "display", "text")
_ID_KEYS = ("id", "Id", "ID")


def field_label(path: str) -> str:
    """Human label for a data path: ``patient.birth_date`` -> ``birth date``."""
    leaf = str(path).split(".")[-1]
    return leaf.replace("_", " ").strip() or str(path)


def option_label(item: Any, label_key: str | None = None) -> str:
    if isinstance(item, Mapping):
        if label_key and item.get(label_key) not in (None, ""):
            return str(item[label_key])
        for key in _LABEL_KEYS:
            if item.get(key) not in (None, ""):
                return str(item[key])
        parts = [str(value) for key, value in item.items() if not _is_id_key(key) and isinstance(value, (str, int, float))]
        return ", ".join(parts) if parts else str(dict(item))
    return str(item)


def format_options(options: Sequence[Any], label_key: str | None = None) -> str:
    return "\n".join(f"{index}. {option_label(item, label_key)}" for index, item in enumerate(options, start=1))


def select_option(options: Sequence[Any], answer: Any, label_key: str | None = None) -> Any | None:
    """Item chosen by a 1-based index, an ordinal word or a label match."""
    if not options:
        return None
    index = parse_index(answer)
    if index is not None and 1 <= index <= len(options):
        return options[index - 1]

    wanted = normalize_text(str(answer))
    if not wanted:
        return None
    exact = [item for item in options if normalize_text(option_label(item, label_key)) == wanted]
    if len(exact) == 1:
        return exact[0]
    partial = [item for item in options if wanted in normalize_text(option_label(item, label_key))]
    if len(partial) == 1:
        return partial[0]
    return None


def _is_id_key(key: str) -> bool:
    lowered = str(key).lower()
    return key in _ID_KEYS or lowered.endswith("id") or lowered.endswith("num")


def item_identifier(item: Any, id_key: str | None = None) -> Any | None:
    if not isinstance(item, Mapping):
        return item if isinstance(item, (str, int)) else None
    if id_key:
        return item.get(id_key)
    for key in _ID_KEYS:
        if item.get(key) not in (None, ""):
            return item[key]
    for key, value in item.items():
        if _is_id_key(key) and value not in (None, ""):
            return value
    return None


def _matches(item: Mapping[str, Any], expected: Any) -> bool:
    wanted = normalize_text(str(expected))
    if not wanted:
        return False
    for value in item.values():
        if isinstance(value, (dict, list)) or value is None:
            continue
        text = normalize_text(str(value))
        if text == wanted or (len(wanted) >= 3 and wanted in text):
            return True
    return False


def extract_entity_id(
    items: Sequence[Any],
    criteria: Mapping[str, Any],
    id_key: str | None = None,
) -> Any | None:
    """Identifier of the single item matching every criterion; None when absent or ambiguous."""
    candidates = list(items or [])
    if not candidates:
        return None
    checks = {key: value for key, value in criteria.items() if value not in (None, "")}
    if checks:
        candidates = [
            item
            for item in candidates
            if isinstance(item, Mapping) and all(_matches(item, value) for value in checks.values())
        ]
    if len(candidates) != 1:
        logger.info("ExtractEntityId found %d candidates for %s", len(candidates), sorted(checks))
        return None
    return item_identifier(candidates[0], id_key)


def confirmation_prompt(summary: str, params: Mapping[str, Any]) -> str:
    text = summary.strip()
    if not text:
        details = ", ".join(
            f"{field_label(key)}: {value}"
            for key, value in params.items()
            if key != "summary" and isinstance(value, (str, int, float))
        )
        text = f"Please confirm: {details}" if details else "Should I go ahead?"
    if not text.rstrip().endswith("?"):
        text = f"{text.rstrip('.')}. Shall I go ahead? (yes/no)"
    return text
