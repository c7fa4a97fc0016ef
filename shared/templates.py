"""Entity & template resolution.

``${name}`` tokens resolve against the reserved runtime namespace seeded at
plan start. Everything else in an ``input_mapping`` is a dotted path into
session data.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.errors import TemplateResolutionError
from shared.models import RESERVED_RUNTIME_NAMES, Domain
from shared.predicates import predicate_field_names, resolve_path
from shared.workflow_contracts import Plan

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\$\{([^}]+)\}")
_MESSAGE_PLACEHOLDER = re.compile(r"(\$?)\{([A-Za-z_][\w.]*)\}")
_FIELD_PATH = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*$")

MAX_FIELD_NAME_LENGTH = 50
DEFAULT_SAFE_DATE_HORIZON_DAYS = 90


def domain_now(domain: Domain | None = None) -> datetime:
    """Current time in the domain's timezone (UTC when unknown)."""
    tz_name = (domain.timezone if domain else "") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s'; using UTC", tz_name)
        tz = timezone.utc
    return datetime.now(tz)


def build_runtime_namespace(
    domain: Domain,
    today: date | None = None,
    now: datetime | None = None,
    horizon_days: int = DEFAULT_SAFE_DATE_HORIZON_DAYS,
) -> dict[str, str]:
    """Seed the reserved namespace for one plan run."""
    current = now or domain_now(domain)
    day = today or current.date()
    return {
        "todayISO": day.isoformat(),
        "tomorrowISO": (day + timedelta(days=1)).isoformat(),
        "safeDateEnd": (day + timedelta(days=max(0, int(horizon_days)))).isoformat(),
        "nowISO": current.replace(microsecond=0).isoformat(),
        "domainId": domain.id,
        "apiEndpoint": domain.api_endpoint,
    }


def is_template_token(value: Any) -> bool:
    return isinstance(value, str) and TEMPLATE_PATTERN.search(value) is not None


def template_name(value: str) -> str | None:
    """Name inside a value that is exactly one ``${name}`` token."""
    match = TEMPLATE_PATTERN.fullmatch(value.strip())
    return match.group(1).strip() if match else None


def resolve_template(token: str, runtime: Mapping[str, Any]) -> Any:
    """Resolve ``${name}`` tokens in ``token``.

    A value that is exactly one token returns the raw namespace value;
    embedded tokens are substituted as text. Unknown names raise
    TemplateResolutionError instead of defaulting.
    """
    matches = list(TEMPLATE_PATTERN.finditer(token))
    if not matches:
        return token

    def _lookup(name: str) -> Any:
        key = name.strip()
        if key not in runtime:
            raise TemplateResolutionError(key, list(runtime.keys()))
        return runtime[key]

    if len(matches) == 1 and matches[0].span() == (0, len(token)):
        return _lookup(matches[0].group(1))

    resolved_text = token
    for match in reversed(matches):
        value = _lookup(match.group(1))
        resolved_text = resolved_text[: match.start()] + str(value) + resolved_text[match.end() :]
    return resolved_text


def build_parameters(
    mapping: Mapping[str, str],
    data: Mapping[str, Any],
    runtime: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble a function's parameters from an ``input_mapping``.

    When ``runtime`` is omitted, reserved names already present in ``data``
    serve as the namespace.
    """
    namespace = runtime if runtime is not None else {
        key: value for key, value in data.items() if key in RESERVED_RUNTIME_NAMES
    }
    params: dict[str, Any] = {}
    for param, source in mapping.items():
        if is_template_token(source):
            params[param] = resolve_template(source, namespace)
            continue
        value = resolve_path(data, source) if isinstance(source, str) and source.strip() else None
        if value is not None:
            params[param] = value
    return params


def looks_like_field_name(token: Any) -> bool:
    """False for literal phrases: whitespace, too long, or not starting with a letter."""
    if not isinstance(token, str):
        return False
    if not token or any(ch.isspace() for ch in token):
        return False
    if len(token) > MAX_FIELD_NAME_LENGTH:
        return False
    if not token[0].isalpha():
        return False
    return _FIELD_PATH.match(token) is not None


def _field_candidates(plan: Plan) -> Iterable[str]:
    for step in plan.steps:
        for source in step.input_mapping.values():
            yield source
        yield from predicate_field_names(step.skip_if)


def extract_plan_entities(plan: Plan) -> list[str]:
    """Distinct data field names a plan references, in first-seen order."""
    names: list[str] = []
    for token in _field_candidates(plan):
        if not isinstance(token, str):
            continue
        token = token.strip()
        if TEMPLATE_PATTERN.search(token):
            continue
        if token in RESERVED_RUNTIME_NAMES:
            continue
        if not looks_like_field_name(token):
            continue
        root = token.split(".")[0]
        if root in RESERVED_RUNTIME_NAMES or root in names:
            continue
        names.append(root)
    return names


def render_message(
    template: str,
    data: Mapping[str, Any],
    runtime: Mapping[str, Any] | None = None,
) -> str:
    """Interpolate ``{field}``, ``{a.b}`` and ``${name}``; unknown placeholders render empty."""
    if not template:
        return ""
    namespace = runtime or {}

    def _replace(match: re.Match[str]) -> str:
        is_template, key = match.group(1), match.group(2)
        if is_template:
            value = namespace.get(key, data.get(key))
        else:
            value = resolve_path(data, key)
            if value is None:
                value = namespace.get(key)
        if value is None:
            return ""
        if isinstance(value, bool):
            return "yes" if value else "no"
        return str(value)

    return _MESSAGE_PLACEHOLDER.sub(_replace, template)
