"""Plan, session and learning contracts shared by the planner, engine and stores.

Plans arrive from language models in camelCase (``inputMapping``,
``waitForUser``...), so every contract accepts both the alias and the
Python field name.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ConditionType = bool | str | dict[str, Any]

PlanProvenance = Literal["synthesized", "promoted", "configured"]
SessionStatus = Literal["idle", "running", "waiting_user", "completed", "failed"]
PendingKind = Literal["ask", "confirm", "select", "revalidate"]
ObservationStatus = Literal["observed", "suggested", "approved"]
EventType = Literal[
    "plan_started",
    "step_started",
    "step_completed",
    "step_skipped",
    "step_failed",
    "plan_paused",
    "plan_resumed",
    "plan_completed",
    "plan_failed",
    "plan_synthesized",
    "fallback_completed",
    "pattern_recorded",
    "pattern_promoted",
]

VIRTUAL_ASK_USER = "AskUser"
VIRTUAL_CONFIRM = "ConfirmWithUser"
VIRTUAL_PRESENT_OPTIONS = "PresentOptions"
VIRTUAL_EXTRACT_ENTITY_ID = "ExtractEntityId"
VIRTUAL_FUNCTION_NAMES = frozenset(
    {VIRTUAL_ASK_USER, VIRTUAL_CONFIRM, VIRTUAL_PRESENT_OPTIONS, VIRTUAL_EXTRACT_ENTITY_ID}
)

_CAMEL_CONFIG = {"frozen": True, "populate_by_name": True, "alias_generator": to_camel}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WaitForUser(BaseModel):
    """Pause directive: the step waits until ``field`` exists in session data."""

    model_config = _CAMEL_CONFIG

    field: str
    prompt: str = ""

    @field_validator("field")
    @classmethod
    def _strip_field(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("waitForUser.field must not be empty")
        return value


class PlanStep(BaseModel):
    """One step of a persisted plan."""

    model_config = _CAMEL_CONFIG

    function: str
    input_mapping: dict[str, str] = Field(default_factory=dict)
    output_as: str | None = None
    skip_if: ConditionType | None = None
    wait_for_user: WaitForUser | None = None
    success_message: str = ""
    error_message: str = ""

    @field_validator("input_mapping", mode="before")
    @classmethod
    def _stringify_mapping(cls, value: Any) -> Any:
        # Models sometimes emit numbers for literal values; keep them visible to the quality check.
        if isinstance(value, dict):
            return {str(k): v if isinstance(v, str) else str(v) for k, v in value.items()}
        return value

    @property
    def is_virtual(self) -> bool:
        return self.function in VIRTUAL_FUNCTION_NAMES

    @property
    def awaited_field(self) -> str | None:
        """Data field this step pauses for, if any."""
        if self.wait_for_user is not None:
            return self.wait_for_user.field
        if self.function == VIRTUAL_CONFIRM:
            return self.output_as or "confirmed"
        if self.function == VIRTUAL_PRESENT_OPTIONS:
            return self.output_as or "selection"
        if self.function == VIRTUAL_ASK_USER:
            return self.output_as
        return None


class Plan(BaseModel):
    """Ordered, persisted sequence of steps satisfying one or more intents."""

    model_config = _CAMEL_CONFIG

    id: str = Field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:12]}")
    domain_id: str
    name: str
    intent_triggers: list[str] = Field(default_factory=list)
    steps: list[PlanStep]
    provenance: PlanProvenance = "synthesized"
    success_message: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    times_used: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def _validate_steps(self) -> "Plan":
        if not self.steps:
            raise ValueError("Plan.steps must not be empty")
        return self

    @property
    def required_user_inputs(self) -> list[dict[str, str]]:
        """Fields the user will be asked for, in step order."""
        inputs: list[dict[str, str]] = []
        seen: set[str] = set()
        for step in self.steps:
            if step.wait_for_user and step.wait_for_user.field not in seen:
                seen.add(step.wait_for_user.field)
                inputs.append({"field": step.wait_for_user.field, "prompt": step.wait_for_user.prompt})
        return inputs

    def function_sequence(self) -> list[str]:
        return [step.function for step in self.steps]


class SessionState(BaseModel):
    """Cross-turn conversation state. The only mutable state the engine owns."""

    model_config = {"frozen": True}

    session_id: str
    domain_id: str
    active_plan_id: str | None = None
    active_intent: str | None = None
    step_index: int = Field(default=0, ge=0)
    data: dict[str, Any] = Field(default_factory=dict)
    status: SessionStatus = "idle"
    waiting_for_user: bool = False
    pending_field: str | None = None
    pending_prompt: str | None = None
    pending_kind: PendingKind | None = None
    pending_options: list[Any] = Field(default_factory=list)
    runtime: dict[str, str] = Field(default_factory=dict, description="Reserved namespace seeded at plan start")
    clarification_attempts: int = 0
    clarification_context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def is_expired(self, ttl_seconds: float, now: datetime | None = None) -> bool:
        if ttl_seconds <= 0:
            return False
        current = now or _utcnow()
        return (current - self.updated_at).total_seconds() > ttl_seconds

    def touched(self, **update: Any) -> "SessionState":
        """Copy with ``update`` applied and ``updated_at`` refreshed."""
        update.setdefault("updated_at", _utcnow())
        return self.model_copy(update=update)


class PatternObservation(BaseModel):
    """Aggregated outcome of fallback runs sharing one fingerprint."""

    model_config = {"frozen": True}

    fingerprint: str
    domain_id: str
    intent: str
    function_sequence: list[str]
    times_observed: int = 0
    success_count: int = 0
    status: ObservationStatus = "observed"
    promoted_plan_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def success_rate(self) -> float:
        if self.times_observed <= 0:
            return 0.0
        return self.success_count / self.times_observed


class EngineEvent(BaseModel):
    """Event envelope persisted for observability."""

    model_config = {"frozen": True}

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:14]}")
    session_id: str
    domain_id: str
    event_type: EventType
    plan_id: str | None = None
    step_index: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
