"""Execution Engine (Layer 4).

State machine over a plan's steps driven by SessionState:
``running`` -> ``waiting_user`` (paused on an awaited field) -> ``running``
-> ``completed`` | ``failed``. Every transition is persisted, so resumption
happens on the next inbound turn, possibly on another worker.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping

from execution.virtual_functions import (
    confirmation_prompt,
    extract_entity_id,
    field_label,
    format_options,
    select_option,
)
from memory.store import EngineStore
from observability.events import record_engine_event
from observability.logger import Observability
from registry.http_handler import DomainApiClient
from registry.loader import DomainConfig
from registry.validators import parse_confirmation, validate_value
from shared.errors import ConfigurationError, ExternalCallError, ValidationError
from shared.models import RESERVED_RUNTIME_NAMES, ValidatorKind
from shared.predicates import evaluate_predicate, resolve_path
from shared.templates import (
    DEFAULT_SAFE_DATE_HORIZON_DAYS,
    build_parameters,
    build_runtime_namespace,
    looks_like_field_name,
    render_message,
)
from shared.workflow_contracts import (
    VIRTUAL_ASK_USER,
    VIRTUAL_CONFIRM,
    VIRTUAL_EXTRACT_ENTITY_ID,
    VIRTUAL_PRESENT_OPTIONS,
    Plan,
    PlanStep,
    SessionState,
)

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_SECONDS = float(os.getenv("STEP_TIMEOUT_SECONDS", "60"))
CANCELLED_MESSAGE = "Okay, I've cancelled that. Nothing was changed."


@dataclass
class ExecutionResult:
    status: str  # completed|waiting_user|failed
    message: str
    session: SessionState
    error_type: str | None = None
    function_calls: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in ("completed", "failed")


def assign_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path in ``data``, creating intermediate objects."""
    parts = [part for part in str(path).split(".") if part]
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _runtime_today(session: SessionState) -> date:
    raw = session.runtime.get("todayISO")
    if raw:
        try:
            return date.fromisoformat(raw)
        except ValueError:
            pass
    return date.today()


class ExecutionEngine:
    """Runs persisted plans step by step with pause/resume."""

    def __init__(
        self,
        store: EngineStore,
        domain_client: DomainApiClient,
        step_timeout_seconds: float | None = None,
        safe_date_horizon_days: int | None = None,
        observability: Observability | None = None,
    ):
        self.store = store
        self.domain_client = domain_client
        self.step_timeout_seconds = (
            DEFAULT_STEP_TIMEOUT_SECONDS if step_timeout_seconds is None else float(step_timeout_seconds)
        )
        self.safe_date_horizon_days = (
            int(os.getenv("SAFE_DATE_HORIZON_DAYS", str(DEFAULT_SAFE_DATE_HORIZON_DAYS)))
            if safe_date_horizon_days is None
            else int(safe_date_horizon_days)
        )
        self.observability = observability or Observability()

    # ─── Public API ────────────────────────────────────────────

    async def start(
        self,
        plan: Plan,
        session: SessionState,
        config: DomainConfig,
        entities: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> ExecutionResult:
        """Seed the runtime namespace and run ``plan`` from its first step."""
        runtime = build_runtime_namespace(
            config.domain,
            today=now.date() if now else None,
            now=now,
            horizon_days=self.safe_date_horizon_days,
        )
        # A new plan never sees answers or outputs of the previous one.
        data: dict[str, Any] = {}
        for key, value in (entities or {}).items():
            if key not in RESERVED_RUNTIME_NAMES and value not in (None, ""):
                data[key] = value
        data.update(runtime)

        running = session.touched(
            active_plan_id=plan.id,
            active_intent=plan.intent_triggers[0] if plan.intent_triggers else plan.name,
            step_index=0,
            data=data,
            runtime=runtime,
            status="running",
            waiting_for_user=False,
            pending_field=None,
            pending_prompt=None,
            pending_kind=None,
            pending_options=[],
        )
        self._event(running, "plan_started", plan, payload={"functions": plan.function_sequence()})
        return await self.run(plan, running, config)

    async def resume(
        self,
        session: SessionState,
        plan: Plan,
        config: DomainConfig,
        utterance: str,
        entities: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        """Write the awaited field from this turn's answer and continue the plan.

        No model call happens here: the value comes from extracted entities
        when present, otherwise from the utterance normalized by the field's
        validation kind. An answer that cannot be normalized keeps the
        session paused at the same step.
        """
        if not session.waiting_for_user or not session.pending_field:
            return await self.run(plan, session, config)

        field_path = session.pending_field
        kind = session.pending_kind or "ask"
        today = _runtime_today(session)
        entities = dict(entities or {})

        if kind == "confirm":
            answer = entities.get(field_path, utterance)
            value = parse_confirmation(answer)
            if value is None:
                return self._still_waiting(session, "Please answer yes or no. " + (session.pending_prompt or ""))
        elif kind == "select":
            label_key = self._label_key(plan, session)
            value = select_option(session.pending_options, entities.get(field_path, utterance), label_key)
            if value is None:
                listing = format_options(session.pending_options, label_key)
                return self._still_waiting(session, f"Please pick one of the options by number:\n{listing}")
        else:
            value_kind = self._field_kind(field_path, plan, session.step_index, config)
            raw = entities.get(field_path)
            if raw is None:
                raw = entities.get(field_path.split(".")[-1], utterance)
            try:
                value = validate_value(value_kind, raw, today)
            except ValueError as exc:
                return self._still_waiting(session, f"Sorry, {exc}. {session.pending_prompt or ''}".strip())

        data = dict(session.data)
        for key, extra in entities.items():
            if key not in RESERVED_RUNTIME_NAMES and key != field_path and key not in data and extra not in (None, ""):
                data[key] = extra
        assign_path(data, field_path, value)

        resumed = session.touched(
            data=data,
            status="running",
            waiting_for_user=False,
            pending_field=None,
            pending_prompt=None,
            pending_kind=None,
            pending_options=[],
        )
        self._event(resumed, "plan_resumed", plan, payload={"field": field_path})
        return await self.run(plan, resumed, config)

    async def run(self, plan: Plan, session: SessionState, config: DomainConfig) -> ExecutionResult:
        """Advance from ``session.step_index`` until the plan pauses, completes or fails."""
        calls: list[str] = []
        current = session
        today = _runtime_today(session)

        while current.step_index < len(plan.steps):
            index = current.step_index
            step = plan.steps[index]
            data = current.data

            if step.skip_if is not None and evaluate_predicate(step.skip_if, data):
                logger.info("Step %d (%s) skipped", index, step.function)
                current = current.touched(step_index=index + 1)
                self._event(current, "step_skipped", plan, step_index=index)
                continue

            awaited = step.awaited_field
            if awaited and resolve_path(data, awaited) is None:
                return self._pause_for_field(plan, current, config, step, awaited, today, calls)

            self._event(current, "step_started", plan, step_index=index, payload={"function": step.function})
            try:
                params = self.prepare_parameters(step, config, current, today=today)
            except ValidationError as exc:
                return self._handle_validation_error(plan, current, step, exc, calls)
            except ConfigurationError as exc:
                return self._fail(plan, current, step, "configuration_error", str(exc), calls)

            try:
                outcome = await self._dispatch(step, params, config, current, calls)
            except ExternalCallError as exc:
                return self._fail(plan, current, step, "external_call_error", str(exc), calls)

            if outcome.get("cancelled"):
                return self._fail(plan, current, step, "cancelled", "cancelled by user", calls, message=CANCELLED_MESSAGE)
            if not outcome.get("success", True):
                return self._fail(plan, current, step, outcome.get("error_type", "step_failed"), outcome.get("error", ""), calls)

            new_data = dict(data)
            if step.output_as and "output" in outcome:
                new_data[step.output_as] = outcome["output"]
            current = current.touched(step_index=index + 1, data=new_data)
            self._event(current, "step_completed", plan, step_index=index, payload={"function": step.function})

        message = render_message(
            plan.success_message or plan.steps[-1].success_message or "All done.",
            current.data,
            current.runtime,
        )
        completed = current.touched(status="completed", step_index=len(plan.steps))
        self.store.save_session(completed)
        self._event(completed, "plan_completed", plan, payload={"calls": calls})
        logger.info("Plan %s completed for session %s", plan.id, completed.session_id)
        return ExecutionResult(status="completed", message=message, session=completed, function_calls=calls)

    def prepare_parameters(
        self,
        step: PlanStep,
        config: DomainConfig,
        session: SessionState,
        *,
        today: date | None = None,
    ) -> dict[str, Any]:
        """Assemble and validate a step's parameters. Raises ValidationError on mismatch."""
        runtime = session.runtime or {k: v for k, v in session.data.items() if k in RESERVED_RUNTIME_NAMES}
        params = build_parameters(step.input_mapping, session.data, runtime)
        validator = config.validators.get(step.function)
        if validator is None:
            raise ConfigurationError(f"Function '{step.function}' is not registered for domain '{config.domain_id}'")
        fn = config.function(step.function)
        if fn is not None and not fn.is_virtual:
            # Unmapped parameters read the same-named data field.
            for name in fn.parameters:
                if name not in step.input_mapping and session.data.get(name) is not None:
                    params[name] = session.data[name]
        return validator.validate(params, today or _runtime_today(session))

    # ─── Dispatch ──────────────────────────────────────────────

    async def _dispatch(
        self,
        step: PlanStep,
        params: dict[str, Any],
        config: DomainConfig,
        session: SessionState,
        calls: list[str],
    ) -> dict[str, Any]:
        if step.function == VIRTUAL_ASK_USER:
            return {"success": True}
        if step.function == VIRTUAL_CONFIRM:
            confirmed = parse_confirmation(resolve_path(session.data, step.awaited_field or "confirmed"))
            return {"success": True} if confirmed else {"cancelled": True}
        if step.function == VIRTUAL_PRESENT_OPTIONS:
            return {"success": True}
        if step.function == VIRTUAL_EXTRACT_ENTITY_ID:
            criteria = {k: v for k, v in params.items() if k not in ("items", "idKey")}
            entity_id = extract_entity_id(params.get("items") or [], criteria, params.get("idKey"))
            if entity_id is None:
                return {"success": False, "error_type": "entity_not_found", "error": "no single matching item"}
            return {"success": True, "output": entity_id}

        calls.append(step.function)
        try:
            output = await asyncio.wait_for(
                self.domain_client.call(
                    config.domain,
                    step.function,
                    params,
                    idempotent=config.is_idempotent(step.function),
                    session_id=session.session_id,
                ),
                timeout=self.step_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalCallError(
                "domain_api",
                f"'{step.function}' timed out after {self.step_timeout_seconds:.0f}s",
                retryable=True,
            ) from exc
        if not output.success:
            return {"success": False, "error_type": "domain_error", "error": output.error or "domain call failed"}
        return {"success": True, "output": output.data}

    # ─── Transitions ───────────────────────────────────────────

    def _pause_for_field(
        self,
        plan: Plan,
        session: SessionState,
        config: DomainConfig,
        step: PlanStep,
        awaited: str,
        today: date,
        calls: list[str],
    ) -> ExecutionResult:
        explicit_prompt = step.wait_for_user.prompt if step.wait_for_user else ""
        options: list[Any] = []
        pending_kind = "ask"

        if step.function in (VIRTUAL_CONFIRM, VIRTUAL_PRESENT_OPTIONS):
            try:
                params = self.prepare_parameters(step, config, session, today=today)
            except ValidationError as exc:
                return self._fail(plan, session, step, "validation_error", str(exc), calls)
            except ConfigurationError as exc:
                return self._fail(plan, session, step, "configuration_error", str(exc), calls)

            if step.function == VIRTUAL_CONFIRM:
                pending_kind = "confirm"
                summary = render_message(explicit_prompt or str(params.get("summary") or ""), session.data, session.runtime)
                prompt = confirmation_prompt(summary, params)
            else:
                pending_kind = "select"
                options = list(params.get("options") or [])
                if not options:
                    return self._fail(plan, session, step, "no_options", "nothing to choose from", calls)
                heading = render_message(explicit_prompt or str(params.get("prompt") or ""), session.data, session.runtime)
                prompt = f"{heading or 'Please choose one:'}\n{format_options(options, params.get('labelKey'))}"
        else:
            prompt_template = explicit_prompt
            if not prompt_template and step.function == VIRTUAL_ASK_USER:
                prompt_template = str(step.input_mapping.get("prompt", ""))
                prompt_template = prompt_template if not looks_like_field_name(prompt_template) else ""
            prompt = render_message(prompt_template, session.data, session.runtime) or f"What is the {field_label(awaited)}?"

        paused = session.touched(
            status="waiting_user",
            waiting_for_user=True,
            pending_field=awaited,
            pending_prompt=prompt,
            pending_kind=pending_kind,
            pending_options=options,
        )
        self.store.save_session(paused)
        self._event(paused, "plan_paused", plan, step_index=paused.step_index, payload={"field": awaited, "kind": pending_kind})
        return ExecutionResult(status="waiting_user", message=prompt, session=paused, function_calls=calls)

    def _handle_validation_error(
        self,
        plan: Plan,
        session: SessionState,
        step: PlanStep,
        error: ValidationError,
        calls: list[str],
    ) -> ExecutionResult:
        if step.is_virtual:
            return self._fail(plan, session, step, "validation_error", str(error), calls)

        param = error.fields[0]
        reason = error.errors[param]
        source = step.input_mapping.get(param)
        if source is None:
            field_path = param
        elif looks_like_field_name(source) and source.split(".")[0] not in RESERVED_RUNTIME_NAMES:
            field_path = source
        else:
            # Templates and literals ignore whatever the user answers.
            return self._fail(
                plan,
                session,
                step,
                "configuration_error",
                f"'{param}' is mapped to '{source}', which the user cannot correct ({reason})",
                calls,
            )
        if reason == "is required":
            prompt = f"I still need the {field_label(field_path)}. What is it?"
        else:
            prompt = f"The {field_label(field_path)} doesn't look right ({reason}). Could you give it again?"

        data = dict(session.data)
        if resolve_path(data, field_path) is not None and "." not in field_path:
            data.pop(field_path, None)
        paused = session.touched(
            data=data,
            status="waiting_user",
            waiting_for_user=True,
            pending_field=field_path,
            pending_prompt=prompt,
            pending_kind="revalidate",
            pending_options=[],
        )
        self.store.save_session(paused)
        self._event(
            paused,
            "step_failed",
            plan,
            step_index=paused.step_index,
            payload={"function": step.function, "error_type": "validation_error", "fields": error.errors},
        )
        logger.info("Validation failed for %s: %s", step.function, error.errors)
        return ExecutionResult(
            status="waiting_user",
            message=prompt,
            session=paused,
            error_type="validation_error",
            function_calls=calls,
        )

    def _fail(
        self,
        plan: Plan,
        session: SessionState,
        step: PlanStep,
        error_type: str,
        detail: str,
        calls: list[str],
        *,
        message: str | None = None,
    ) -> ExecutionResult:
        text = message or render_message(step.error_message, session.data, session.runtime) or (
            "Sorry, something went wrong and I couldn't finish that request."
        )
        failed = session.touched(
            status="failed",
            waiting_for_user=False,
            pending_field=None,
            pending_prompt=None,
            pending_kind=None,
            pending_options=[],
        )
        self.store.save_session(failed)
        self._event(
            failed,
            "step_failed",
            plan,
            step_index=failed.step_index,
            payload={"function": step.function, "error_type": error_type, "detail": detail},
        )
        self._event(failed, "plan_failed", plan, step_index=failed.step_index, payload={"error_type": error_type})
        logger.warning("Plan %s failed at step %d (%s): %s", plan.id, failed.step_index, step.function, detail)
        return ExecutionResult(status="failed", message=text, session=failed, error_type=error_type, function_calls=calls)

    def _still_waiting(self, session: SessionState, prompt: str) -> ExecutionResult:
        waiting = session.touched()
        self.store.save_session(waiting)
        return ExecutionResult(status="waiting_user", message=prompt, session=waiting, error_type="invalid_answer")

    # ─── Helpers ───────────────────────────────────────────────

    def _field_kind(self, field_path: str, plan: Plan, step_index: int, config: DomainConfig) -> ValidatorKind:
        """Validation kind for an awaited field: entity kind, else the parameter it feeds, else string."""
        kind = config.entity_kind(field_path) or config.entity_kind(field_path.split(".")[0])
        if kind is not None:
            return kind
        for step in plan.steps[step_index:]:
            fn = config.function(step.function)
            if fn is None:
                continue
            for param, source in step.input_mapping.items():
                if source == field_path and param in fn.parameters:
                    return fn.parameters[param].type
            if field_path in fn.parameters and field_path not in step.input_mapping:
                return fn.parameters[field_path].type
        return ValidatorKind.STRING

    def _label_key(self, plan: Plan, session: SessionState) -> str | None:
        if session.step_index >= len(plan.steps):
            return None
        source = plan.steps[session.step_index].input_mapping.get("labelKey")
        if not source:
            return None
        value = resolve_path(session.data, source)
        return str(value) if isinstance(value, str) else None

    def _event(
        self,
        session: SessionState,
        event_type: str,
        plan: Plan,
        *,
        step_index: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        record_engine_event(
            self.store,
            session_id=session.session_id,
            domain_id=session.domain_id,
            event_type=event_type,
            plan_id=plan.id,
            step_index=step_index,
            payload=payload,
            observability=self.observability.span(session_id=session.session_id, domain_id=session.domain_id),
        )
