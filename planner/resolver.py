"""
Workflow Resolver (Layer 3) - cached plan lookup with synthesis on miss.

Responsibility:
- Return the cached plan for (domain, intent) unchanged on hit
- On miss, synthesize once per key within this worker and persist the result
- Auto-register entity definitions the new plan references
"""

import logging

from memory.store import EngineStore
from observability.events import record_engine_event
from planner.synthesizer import PlanSynthesizer
from registry.loader import DomainConfig, DomainConfigLoader
from shared.locks import KeyedMutex
from shared.models import IntentOutput, ValidatorKind, normalize_intent_name
from shared.templates import extract_plan_entities, looks_like_field_name
from shared.workflow_contracts import Plan

logger = logging.getLogger(__name__)


def plan_entity_kinds(plan: Plan, config: DomainConfig) -> dict[str, ValidatorKind]:
    """Validation kind for fields mapped directly onto a typed function parameter."""
    kinds: dict[str, ValidatorKind] = {}
    for step in plan.steps:
        fn = config.function(step.function)
        if fn is None:
            continue
        for param, source in step.input_mapping.items():
            spec = fn.parameters.get(param)
            if spec is None or not looks_like_field_name(source) or "." in source:
                continue
            kinds.setdefault(source, spec.type)
    return kinds


def entities_to_register(plan: Plan, config: DomainConfig) -> list[str]:
    """Fields the plan reads that are neither produced by a step nor already defined."""
    produced = {step.output_as for step in plan.steps if step.output_as}
    names = [name for name in extract_plan_entities(plan) if name not in produced]
    for step in plan.steps:
        awaited = step.awaited_field
        if awaited and awaited not in names and awaited not in produced:
            names.append(awaited)
    return [name for name in names if name not in config.entities]


class WorkflowResolver:
    """Resolves (domain, intent) to a persisted plan."""

    def __init__(
        self,
        store: EngineStore,
        synthesizer: PlanSynthesizer,
        config_loader: DomainConfigLoader | None = None,
    ):
        self.store = store
        self.synthesizer = synthesizer
        self.config_loader = config_loader
        self._locks = KeyedMutex()

    def cached(self, domain_id: str, intent: str) -> Plan | None:
        return self.store.get_plan(domain_id, intent)

    async def resolve(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        *,
        session_id: str | None = None,
    ) -> Plan:
        """Cached plan on hit; synthesized and persisted plan on miss.

        Raises WorkflowSynthesisError when synthesis is abandoned.
        """
        key = (config.domain_id, normalize_intent_name(intent.intent))
        plan = self.store.get_plan(*key)
        if plan is not None:
            self.store.increment_plan_usage(plan.id)
            logger.info("Plan cache hit: %s/%s -> %s", key[0], key[1], plan.id)
            return plan

        async with self._locks.acquire(key):
            # Another turn may have synthesized while we waited.
            plan = self.store.get_plan(*key)
            if plan is not None:
                self.store.increment_plan_usage(plan.id)
                return plan

            logger.info("Plan cache miss: synthesizing for %s/%s", key[0], key[1])
            candidate = await self.synthesizer.synthesize(config, intent, session_id=session_id)
            candidate = candidate.model_copy(
                update={
                    "intent_triggers": [key[1]] + [t for t in candidate.intent_triggers if normalize_intent_name(t) != key[1]],
                    "provenance": "synthesized",
                }
            )
            stored = self.store.save_plan(candidate)

        self._register_entities(stored, config)
        record_engine_event(
            self.store,
            session_id=session_id or "",
            domain_id=config.domain_id,
            event_type="plan_synthesized",
            plan_id=stored.id,
            payload={"intent": key[1], "functions": stored.function_sequence()},
        )
        return stored

    def _register_entities(self, plan: Plan, config: DomainConfig) -> list[str]:
        if self.config_loader is None:
            return []
        names = entities_to_register(plan, config)
        if not names:
            return []
        return self.config_loader.register_missing_entities(
            config.domain_id,
            names,
            kinds=plan_entity_kinds(plan, config),
        )
