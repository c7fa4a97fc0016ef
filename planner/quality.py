"""Deterministic quality gate run on every candidate plan before it is persisted."""

from __future__ import annotations

import re

from registry.loader import DomainConfig
from shared.models import RESERVED_RUNTIME_NAMES
from shared.predicates import predicate_field_names, validate_predicate
from shared.templates import TEMPLATE_PATTERN, looks_like_field_name
from shared.workflow_contracts import VIRTUAL_ASK_USER, VIRTUAL_CONFIRM, Plan

LITERAL_DATETIME_PATTERNS = (
    re.compile(r"\d{4}-\d{1,2}-\d{1,2}"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"T\d{2}:\d{2}"),
    re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$"),
)


def is_literal_datetime(value: str) -> bool:
    """True for hardcoded dates/timestamps such as ``2025-01-01`` or ``1/2/2025``."""
    text = str(value).strip()
    if TEMPLATE_PATTERN.fullmatch(text):
        return False
    return any(pattern.search(text) for pattern in LITERAL_DATETIME_PATTERNS)


def check_plan_quality(plan: Plan, config: DomainConfig) -> list[str]:
    """Return every problem found in ``plan``; an empty list means it may be persisted."""
    issues: list[str] = []
    entities = set(config.entities.keys())
    produced: set[str] = set()
    confirmed = False

    for index, step in enumerate(plan.steps, start=1):
        where = f"step {index} ({step.function})"
        fn = config.function(step.function)
        if fn is None:
            issues.append(f"{where}: function '{step.function}' is not in the registry")

        if step.function == VIRTUAL_ASK_USER and step.awaited_field is None:
            issues.append(f"{where}: AskUser needs a waitForUser field")

        available = entities | produced | RESERVED_RUNTIME_NAMES
        awaited = step.awaited_field
        if awaited is not None:
            if awaited in RESERVED_RUNTIME_NAMES:
                issues.append(f"{where}: waitForUser field '{awaited}' is a reserved name")
            available = available | {awaited}

        for param, source in step.input_mapping.items():
            text = str(source).strip()
            if is_literal_datetime(text):
                issues.append(
                    f"{where}: '{param}' hardcodes the date/time '{text}'; use ${{todayISO}}, ${{safeDateEnd}} or a field"
                )
                continue
            tokens = TEMPLATE_PATTERN.findall(text)
            if tokens:
                for token in tokens:
                    if token.strip() not in RESERVED_RUNTIME_NAMES:
                        issues.append(f"{where}: '{param}' uses unknown template ${{{token}}}")
                continue
            if not looks_like_field_name(text):
                issues.append(f"{where}: '{param}' maps to a literal value '{text}' instead of a field")
                continue
            root = text.split(".")[0]
            if root not in available:
                issues.append(f"{where}: '{param}' references '{root}', which no earlier step produces and is not a known entity")

        predicate_issues = validate_predicate(step.skip_if)
        issues.extend(f"{where}: skipIf {item}" for item in predicate_issues)
        if not predicate_issues:
            for name in predicate_field_names(step.skip_if):
                if name not in available and name != "data":
                    issues.append(f"{where}: skipIf references unknown field '{name}'")

        if fn is not None and not fn.is_virtual and config.domain.is_critical(step.function) and not confirmed:
            issues.append(f"{where}: critical operation without an earlier ConfirmWithUser step")

        if step.function == VIRTUAL_CONFIRM:
            confirmed = True
        if step.output_as:
            if step.output_as in RESERVED_RUNTIME_NAMES:
                issues.append(f"{where}: outputAs '{step.output_as}' is a reserved name")
            produced.add(step.output_as)
        if awaited is not None:
            produced.add(awaited)

    return issues
