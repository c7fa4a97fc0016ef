"""Schema validator registry.

One normalizing validator per ValidatorKind. Validators return the cleaned
value or raise ``ValueError`` with a message meant for the end user.
A ``FunctionValidator`` is built once per FunctionDefinition when a domain
loads, not per call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from shared.errors import ValidationError
from shared.models import FunctionDefinition, ParameterSpec, ValidatorKind

ValidatorFn = Callable[[Any, date], Any]

_MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
_ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
}
_YES = {"yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "correct", "confirm", "confirmed", "right", "true", "si", "sim"}
_NO = {"no", "n", "nope", "nah", "cancel", "stop", "wrong", "incorrect", "false", "nao", "don't", "dont"}

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
_NAME_RE = re.compile(r"^[^\W\d_]+(?:[' \-.]+[^\W\d_]+)*\.?$")
_ISO_DATE_RE = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})")
_US_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")
_MONTH_FIRST_RE = re.compile(r"([a-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?(?:\s+(\d{4}))?")
_DAY_FIRST_RE = re.compile(r"(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?([a-z]+),?(?:\s+(\d{4}))?")
_IN_DAYS_RE = re.compile(r"\bin\s+(\d+|[a-z]+)\s+days?\b")
_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::\d{2})?\s*([ap])\.?\s*m?\.?$|^(\d{1,2}):(\d{2})(?::\d{2})?$")


def _text(value: Any) -> str:
    return " ".join(str(value).strip().split())


# ─── Dates ─────────────────────────────────────────────────────


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def resolve_relative_date(text: str, today: date) -> date | None:
    """Resolve ``today``, ``tomorrow``, ``<weekday>``, ``next <weekday>``, ``in N days``."""
    lowered = text.lower()
    if "day after tomorrow" in lowered:
        return today + timedelta(days=2)
    if "tomorrow" in lowered:
        return today + timedelta(days=1)
    if "yesterday" in lowered:
        return today - timedelta(days=1)
    if re.search(r"\btoday\b", lowered):
        return today

    match = _IN_DAYS_RE.search(lowered)
    if match:
        raw = match.group(1)
        days = int(raw) if raw.isdigit() else _NUMBER_WORDS.get(raw)
        if days is not None:
            return today + timedelta(days=days)

    if "next week" in lowered:
        return today + timedelta(days=7)

    for index, weekday in enumerate(_WEEKDAYS):
        if re.search(rf"\b{weekday}\b", lowered) or re.search(rf"\b{weekday[:3]}\b", lowered):
            # The upcoming occurrence, never today.
            delta = (index - today.weekday()) % 7 or 7
            return today + timedelta(days=delta)
    return None


def parse_date(value: Any, today: date) -> date:
    """Parse ISO, US, month-name and relative forms into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _text(value)
    if not text:
        raise ValueError("a date is required")
    lowered = text.lower()

    match = _ISO_DATE_RE.search(text)
    if match:
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    match = _US_DATE_RE.search(text)
    if match:
        year = int(match.group(3))
        if year < 100:
            year = 1900 + year if year >= 50 else 2000 + year
        parsed = _safe_date(year, int(match.group(1)), int(match.group(2)))
        if parsed:
            return parsed

    for regex, month_group, day_group in ((_MONTH_FIRST_RE, 1, 2), (_DAY_FIRST_RE, 2, 1)):
        for match in regex.finditer(lowered):
            month = _MONTHS.get(match.group(month_group))
            if not month:
                continue
            year_text = match.group(3)
            year = int(year_text) if year_text else today.year
            parsed = _safe_date(year, month, int(match.group(day_group)))
            if parsed is None:
                continue
            if not year_text and parsed < today:
                parsed = _safe_date(year + 1, month, parsed.day) or parsed
            return parsed

    relative = resolve_relative_date(text, today)
    if relative:
        return relative
    raise ValueError(f"'{text}' is not a date I understand (use YYYY-MM-DD)")


def validate_date(value: Any, today: date) -> str:
    return parse_date(value, today).isoformat()


def validate_future_date(value: Any, today: date) -> str:
    parsed = parse_date(value, today)
    if parsed < today:
        raise ValueError(f"{parsed.isoformat()} is in the past")
    return parsed.isoformat()


def validate_past_date(value: Any, today: date) -> str:
    parsed = parse_date(value, today)
    if parsed >= today:
        raise ValueError(f"{parsed.isoformat()} must be in the past")
    return parsed.isoformat()


# ─── Times ─────────────────────────────────────────────────────


def validate_time(value: Any, today: date) -> str:
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    text = _text(value).lower().replace(" o'clock", "")
    if text == "noon":
        return "12:00"
    if text == "midnight":
        return "00:00"
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"'{value}' is not a time (use HH:MM or 2:30 pm)")
    if match.group(4) is not None:
        hour, minute = int(match.group(4)), int(match.group(5))
    else:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        meridiem = match.group(3)
        if hour < 1 or hour > 12:
            raise ValueError(f"'{value}' is not a valid 12-hour time")
        if meridiem == "p" and hour < 12:
            hour += 12
        if meridiem == "a" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59:
        raise ValueError(f"'{value}' is not a valid time")
    return f"{hour:02d}:{minute:02d}"


def validate_datetime(value: Any, today: date) -> str:
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat()
    text = _text(value)
    if not text:
        raise ValueError("a date and time are required")
    try:
        return datetime.fromisoformat(text.replace(" ", "T", 1)).replace(microsecond=0).isoformat()
    except ValueError:
        pass
    match = re.search(r"\b(?:at\s+)?(\d{1,2}(?::\d{2})?\s*(?:[ap]\.?m\.?)?)\s*$", text, flags=re.IGNORECASE)
    if not match:
        raise ValueError(f"'{text}' is not a date and time")
    day = parse_date(text[: match.start()].strip() or "today", today)
    hour, minute = validate_time(match.group(1), today).split(":")
    return datetime(day.year, day.month, day.day, int(hour), int(minute)).isoformat()


# ─── Identity and contact ──────────────────────────────────────


def validate_phone(value: Any, today: date) -> str:
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        raise ValueError(f"'{value}' is not a 10-digit phone number")
    return digits


def validate_name(value: Any, today: date) -> str:
    text = _text(value)
    if not text:
        raise ValueError("a name is required")
    if len(text) > 100 or not _NAME_RE.match(text):
        raise ValueError(f"'{text}' does not look like a name")
    return text


def validate_email(value: Any, today: date) -> str:
    text = _text(value).lower()
    if not _EMAIL_RE.match(text):
        raise ValueError(f"'{value}' is not a valid email address")
    return text


def validate_id(value: Any, today: date) -> int | str:
    if isinstance(value, bool):
        raise ValueError("an identifier is required")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"'{value}' is not a valid identifier")
        return value
    if isinstance(value, float) and value.is_integer() and value > 0:
        return int(value)
    text = _text(value)
    if not text or " " in text:
        raise ValueError(f"'{value}' is not a valid identifier")
    if text.isdigit():
        number = int(text)
        if number <= 0:
            raise ValueError(f"'{value}' is not a valid identifier")
        return number
    return text


# ─── Choices ───────────────────────────────────────────────────


def parse_confirmation(value: Any) -> bool | None:
    """True/False for recognizable yes/no answers, None otherwise."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    words = re.findall(r"[a-z']+", str(value).lower())
    if not words:
        return None
    if words[0] in _NO:
        return False
    if words[0] in _YES or " ".join(words[:2]) in {"go ahead", "do it", "sounds good"}:
        return True
    if "not" in words or any(word in _NO for word in words):
        return False
    if any(word in _YES for word in words):
        return True
    return None


def validate_confirmation(value: Any, today: date) -> bool:
    parsed = parse_confirmation(value)
    if parsed is None:
        raise ValueError(f"'{value}' is not a yes or no answer")
    return parsed


def parse_index(value: Any) -> int | None:
    """1-based selection index from ints, digits, ``2nd``, ``second`` or ``two``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = _text(value).lower()
    match = re.search(r"\b(\d+)(?:st|nd|rd|th)?\b", text)
    if match:
        return int(match.group(1))
    for word in re.findall(r"[a-z]+", text):
        if word in _ORDINAL_WORDS:
            return _ORDINAL_WORDS[word]
        if word in _NUMBER_WORDS:
            return _NUMBER_WORDS[word]
    return None


def validate_index(value: Any, today: date) -> int:
    parsed = parse_index(value)
    if parsed is None or parsed < 1:
        raise ValueError(f"'{value}' is not an option number")
    return parsed


# ─── Structural ────────────────────────────────────────────────


def validate_object(value: Any, today: date) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError("expected an object")
    return dict(value)


def validate_array(value: Any, today: date) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ValueError("expected a list")


def validate_string(value: Any, today: date) -> str:
    if isinstance(value, (dict, list, tuple)):
        raise ValueError("expected text")
    text = str(value).strip()
    if not text:
        raise ValueError("a value is required")
    return text


def validate_number(value: Any, today: date) -> int | float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, (int, float)):
        return value
    text = _text(value).replace(",", "")
    try:
        number = float(text)
    except ValueError as exc:
        raise ValueError(f"'{value}' is not a number") from exc
    return int(number) if number.is_integer() else number


VALIDATORS: dict[ValidatorKind, ValidatorFn] = {
    ValidatorKind.PHONE: validate_phone,
    ValidatorKind.DATE: validate_date,
    ValidatorKind.FUTURE_DATE: validate_future_date,
    ValidatorKind.PAST_DATE: validate_past_date,
    ValidatorKind.TIME: validate_time,
    ValidatorKind.DATETIME: validate_datetime,
    ValidatorKind.NAME: validate_name,
    ValidatorKind.EMAIL: validate_email,
    ValidatorKind.ID: validate_id,
    ValidatorKind.CONFIRMATION: validate_confirmation,
    ValidatorKind.INDEX: validate_index,
    ValidatorKind.OBJECT: validate_object,
    ValidatorKind.ARRAY: validate_array,
    ValidatorKind.STRING: validate_string,
    ValidatorKind.NUMBER: validate_number,
}


def validate_value(kind: ValidatorKind | str, value: Any, today: date | None = None) -> Any:
    """Normalize a single value with the validator for ``kind``."""
    validator = VALIDATORS[ValidatorKind(kind)]
    return validator(value, today or date.today())


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass(frozen=True)
class FunctionValidator:
    """Compiled parameter validator for one function."""

    function: str
    parameters: dict[str, tuple[ParameterSpec, ValidatorFn]]
    keep_unknown: bool = False

    def validate(self, params: Mapping[str, Any], today: date | None = None) -> dict[str, Any]:
        """Return cleaned parameters or raise ValidationError listing every failing field."""
        day = today or date.today()
        cleaned: dict[str, Any] = {}
        errors: dict[str, str] = {}

        for name, (spec, validator) in self.parameters.items():
            value = params.get(name)
            if _is_blank(value):
                if spec.nullable and name in params:
                    cleaned[name] = None
                elif spec.required:
                    errors[name] = "is required"
                continue
            try:
                cleaned[name] = validator(value, day)
            except ValueError as exc:
                errors[name] = str(exc)

        if self.keep_unknown:
            for name, value in params.items():
                if name not in self.parameters and value is not None:
                    cleaned[name] = value

        if errors:
            raise ValidationError(self.function, errors)
        return cleaned


def build_function_validator(function: FunctionDefinition) -> FunctionValidator:
    compiled = {name: (spec, VALIDATORS[spec.type]) for name, spec in function.parameters.items()}
    return FunctionValidator(
        function=function.name,
        parameters=compiled,
        keep_unknown=function.additional_parameters,
    )


def build_registry_validators(functions: Iterable[FunctionDefinition]) -> dict[str, FunctionValidator]:
    return {function.name: build_function_validator(function) for function in functions}
