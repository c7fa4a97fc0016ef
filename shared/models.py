"""
Shared Pydantic models for all layers.
Configuration records are immutable (frozen) after creation.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Names seeded into every plan run. Entities may never use them.
RESERVED_RUNTIME_NAMES: frozenset[str] = frozenset(
    {"todayISO", "tomorrowISO", "safeDateEnd", "nowISO", "domainId", "apiEndpoint"}
)

DEFAULT_CRITICAL_OPERATIONS = ("Create", "Update", "Delete", "Cancel")


def normalize_intent_name(intent: str) -> str:
    """Canonical intent key: lower-case, spaces/hyphens as underscores."""
    return re.sub(r"[\s\-]+", "_", str(intent or "").strip().lower()).strip("_")


# ─── Entry Layer ───────────────────────────────────────────────

class EntryRequest(BaseModel):
    """Normalized inbound turn from any entry adapter."""
    model_config = {"frozen": True}

    session_id: str
    domain_id: str
    input_text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class TurnResponse(BaseModel):
    """What surrounding systems get back for one turn."""
    model_config = {"frozen": True}

    text: str
    session_state: dict[str, Any] = Field(default_factory=dict, description="Opaque to callers")
    terminal: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


# ─── Domain Configuration ──────────────────────────────────────

class ValidatorKind(str, Enum):
    """Closed set of parameter/entity validation kinds."""

    PHONE = "phone"
    DATE = "date"
    FUTURE_DATE = "future_date"
    PAST_DATE = "past_date"
    TIME = "time"
    DATETIME = "datetime"
    NAME = "name"
    EMAIL = "email"
    ID = "id"
    CONFIRMATION = "confirmation"
    INDEX = "index"
    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    NUMBER = "number"


class ParameterSpec(BaseModel):
    model_config = {"frozen": True}

    type: ValidatorKind = Field(default=ValidatorKind.STRING)
    required: bool = False
    nullable: bool = False
    description: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        # Registries in the wild use a few loose spellings.
        aliases = {
            "integer": "number",
            "int": "number",
            "float": "number",
            "boolean": "confirmation",
            "bool": "confirmation",
            "list": "array",
            "dict": "object",
            "str": "string",
            "text": "string",
        }
        if isinstance(value, str):
            lowered = value.strip().lower()
            return aliases.get(lowered, lowered)
        return value


class FunctionDefinition(BaseModel):
    """A callable in a domain's registry. Virtual functions run in-process."""
    model_config = {"frozen": True}

    name: str
    description: str = ""
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    is_virtual: bool = False
    domain_id: str = ""
    idempotent: bool | None = Field(
        default=None,
        description="Whether transient failures may be retried. None = derive from critical-operation patterns.",
    )
    additional_parameters: bool = Field(default=False, description="Keep parameters not declared in the map")

    @property
    def required_parameters(self) -> list[str]:
        return [name for name, spec in self.parameters.items() if spec.required]


class EntityDefinition(BaseModel):
    model_config = {"frozen": True}

    name: str
    validation_type: ValidatorKind = Field(default=ValidatorKind.STRING)
    extraction_hint: str = ""
    domain_id: str = ""

    @field_validator("name")
    @classmethod
    def _not_reserved(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("Entity name must not be empty")
        if name in RESERVED_RUNTIME_NAMES:
            raise ValueError(f"Entity name '{name}' collides with a reserved runtime name")
        return name


class TriggerPhrase(BaseModel):
    model_config = {"frozen": True}

    phrase: str
    intent: str
    domain_id: str = ""


class Domain(BaseModel):
    """A configured business context the engine operates over."""
    model_config = {"frozen": True}

    id: str
    display_name: str = ""
    persona: str = Field(default="", description="Persona/system-prompt text")
    api_endpoint: str = ""
    api_auth_token: str | None = None
    business_rules: str = ""
    critical_operations: list[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_OPERATIONS))
    timezone: str = "UTC"

    def is_critical(self, function_name: str) -> bool:
        """True when the function name matches a critical-operation pattern.

        A pattern matches as a prefix (``Create`` matches ``CreateAppointment``)
        or, when it contains regex metacharacters, as a full regex search.
        """
        for pattern in self.critical_operations:
            pattern = str(pattern).strip()
            if not pattern:
                continue
            if re.escape(pattern) == pattern:
                if function_name.lower().startswith(pattern.lower()):
                    return True
            elif re.search(pattern, function_name, flags=re.IGNORECASE):
                return True
        return False


# ─── Intent Layer ──────────────────────────────────────────────

class IntentOutput(BaseModel):
    """Resolved intent for one utterance."""
    model_config = {"frozen": True}

    intent: str
    entities: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: Literal["trigger", "validated"] = "validated"
    is_new: bool = Field(False, description="Outside the known intents or below the confidence floor")
    original_query: str = ""


# ─── Model Layer (Policy) ──────────────────────────────────────

class ModelPolicy(BaseModel):
    """Configuration for Model Layer execution."""
    model_config = {"frozen": True}

    model_name: str
    temperature: float = 0.0
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 0.5
    json_mode: bool = True
    max_tokens: int = 1024


# ─── Domain API ────────────────────────────────────────────────

class DomainOutput(BaseModel):
    """Response of the domain API for one function call."""
    model_config = {"frozen": True}

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
