"""
Pattern Learner - turns repeated fallback runs into reusable plans.

Responsibility:
- Fingerprint (domain, intent, function sequence)
- Atomically count observations and successes per fingerprint
- Flag fingerprints crossing the occurrence/success-rate threshold as suggested
- Promote an approved suggestion into a persisted plan
"""

import hashlib
import logging
import os
import re
from dataclasses import replace

from memory.store import EngineStore
from observability.events import record_engine_event
from planner.quality import check_plan_quality
from registry.loader import DomainConfig, DomainConfigLoader
from shared.errors import ConfigurationError, PatternNotFoundError, PatternNotSuggestedError
from shared.models import EntityDefinition, ValidatorKind, normalize_intent_name
from shared.workflow_contracts import VIRTUAL_CONFIRM, PatternObservation, Plan, PlanStep, WaitForUser

logger = logging.getLogger(__name__)

_DATE_KINDS = {ValidatorKind.DATE, ValidatorKind.FUTURE_DATE, ValidatorKind.PAST_DATE, ValidatorKind.DATETIME}
_START_HINTS = ("start", "from", "begin", "since")
_END_HINTS = ("end", "until", "stop", "to")


def fingerprint(domain_id: str, intent: str, sequence: list[str]) -> str:
    raw = f"{domain_id}|{normalize_intent_name(intent)}|{'>'.join(sequence)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def snake_case(name: str) -> str:
    """``GetAvailableSlots`` -> ``get_available_slots``."""
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    text = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", text)
    return re.sub(r"[^a-zA-Z0-9]+", "_", text).strip("_").lower()


def _date_template(param: str) -> str | None:
    lowered = param.lower()
    if any(lowered.startswith(hint) or lowered.endswith(hint) for hint in _START_HINTS):
        return "${todayISO}"
    if any(lowered.startswith(hint) or lowered.endswith(hint) for hint in _END_HINTS):
        return "${safeDateEnd}"
    return None


class PatternLearner:
    """Records fallback outcomes and promotes frequent successful sequences."""

    def __init__(
        self,
        store: EngineStore,
        config_loader: DomainConfigLoader | None = None,
        min_occurrences: int | None = None,
        min_success_rate: float | None = None,
    ):
        self.store = store
        self.config_loader = config_loader
        self.min_occurrences = (
            min_occurrences if min_occurrences is not None else int(os.getenv("PATTERN_MIN_OCCURRENCES", "3"))
        )
        self.min_success_rate = (
            min_success_rate if min_success_rate is not None else float(os.getenv("PATTERN_MIN_SUCCESS_RATE", "0.8"))
        )

    def record(
        self,
        domain_id: str,
        intent: str,
        sequence: list[str],
        success: bool,
        *,
        session_id: str = "",
    ) -> PatternObservation | None:
        """Count one completed fallback run. Empty sequences are ignored."""
        if not sequence:
            return None
        fp = fingerprint(domain_id, intent, sequence)
        observation = self.store.record_observation(
            fp,
            domain_id,
            normalize_intent_name(intent),
            list(sequence),
            success,
        )
        record_engine_event(
            self.store,
            session_id=session_id,
            domain_id=domain_id,
            event_type="pattern_recorded",
            payload={"fingerprint": fp, "success": success, "times_observed": observation.times_observed},
        )

        if (
            observation.status == "observed"
            and observation.times_observed >= self.min_occurrences
            and observation.success_rate >= self.min_success_rate
            and self.store.mark_suggested(fp)
        ):
            logger.info(
                "Pattern %s suggested for promotion (%s: %s, %d runs, %.0f%% success)",
                fp[:12],
                observation.intent,
                " > ".join(sequence),
                observation.times_observed,
                observation.success_rate * 100,
            )
            observation = observation.model_copy(update={"status": "suggested"})
        return observation

    def list_suggestions(self, domain_id: str | None = None) -> list[PatternObservation]:
        return self.store.list_observations(domain_id=domain_id, status="suggested")

    def approve(self, fp: str, config: DomainConfig | None = None) -> Plan:
        """Promote a suggested observation into a persisted plan and mark it approved.

        Raises PatternNotSuggestedError while the pattern is below the
        promotion threshold, and ConfigurationError when the built plan
        fails the quality gate.
        """
        observation = self.store.get_observation(fp)
        if observation is None:
            raise PatternNotFoundError(fp)
        if observation.status == "approved" and observation.promoted_plan_id:
            existing = self.store.get_plan_by_id(observation.promoted_plan_id)
            if existing is not None:
                return existing
        elif observation.status != "suggested":
            raise PatternNotSuggestedError(fp, observation.status)

        if config is None:
            if self.config_loader is None:
                raise ConfigurationError("Approving a pattern needs the domain configuration")
            config = self.config_loader.load(observation.domain_id)

        plan, new_fields = self.build_plan(observation, config)
        issues = check_plan_quality(plan, self._with_entities(config, new_fields))
        if issues:
            raise ConfigurationError(f"Promoted plan for pattern {fp[:12]} rejected: {'; '.join(issues)}")
        stored = self.store.save_plan(plan)
        self.store.set_observation_status(fp, "approved", promoted_plan_id=stored.id)
        if new_fields and self.config_loader is not None:
            self.config_loader.register_missing_entities(config.domain_id, list(new_fields), kinds=new_fields)

        record_engine_event(
            self.store,
            session_id="",
            domain_id=config.domain_id,
            event_type="pattern_promoted",
            plan_id=stored.id,
            payload={"fingerprint": fp, "intent": observation.intent},
        )
        logger.info("Pattern %s promoted to plan %s", fp[:12], stored.id)
        return stored

    def _with_entities(self, config: DomainConfig, new_fields: dict[str, ValidatorKind]) -> DomainConfig:
        if not new_fields:
            return config
        entities = dict(config.entities)
        for name, kind in new_fields.items():
            entities.setdefault(name, EntityDefinition(name=name, validation_type=kind, domain_id=config.domain_id))
        return replace(config, entities=entities)

    def build_plan(self, observation: PatternObservation, config: DomainConfig) -> tuple[Plan, dict[str, ValidatorKind]]:
        """Mechanical plan for a recorded sequence, plus the new fields it asks the user for."""
        steps: list[PlanStep] = []
        produced: set[str] = set()
        new_fields: dict[str, ValidatorKind] = {}

        for name in observation.function_sequence:
            fn = config.function(name)
            if fn is None:
                raise ConfigurationError(f"Function '{name}' is no longer registered for '{config.domain_id}'")
            output_key = snake_case(name)

            if config.domain.is_critical(name):
                readable = output_key.replace("_", " ")
                steps.append(
                    PlanStep(
                        function=VIRTUAL_CONFIRM,
                        wait_for_user=WaitForUser(field=f"confirm_{output_key}", prompt=f"Shall I {readable} now?"),
                    )
                )

            mapping: dict[str, str] = {}
            for param, spec in fn.parameters.items():
                if param in config.entities or param in produced:
                    mapping[param] = param
                    continue
                template = _date_template(param) if spec.type in _DATE_KINDS else None
                if template:
                    mapping[param] = template
                elif spec.required:
                    # Required inputs nobody produces are asked for at run time.
                    mapping[param] = param
                    new_fields[param] = spec.type

            steps.append(PlanStep(function=name, input_mapping=mapping, output_as=output_key))
            produced.add(output_key)

        plan = Plan(
            domain_id=config.domain_id,
            name=f"{observation.intent.replace('_', ' ').title()} (learned)",
            intent_triggers=[observation.intent],
            steps=steps,
            provenance="promoted",
        )
        return plan, new_fields
