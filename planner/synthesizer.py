"""
Plan Synthesizer - consensus plan generation.

Pipeline per attempt:
1. Two independent plan-generation calls (distinct model policies), concurrently.
2. A merge/validate call comparing both candidates, skipped when they are
   structurally identical.
3. The deterministic quality gate, applied to the agreed or merged plan only.
A failed gate triggers one regeneration with the issues fed back; a second
failure raises WorkflowSynthesisError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from models.selector import ModelSelector
from planner.quality import check_plan_quality
from registry.loader import DomainConfig
from shared.errors import WorkflowSynthesisError
from shared.models import RESERVED_RUNTIME_NAMES, IntentOutput, ModelPolicy
from shared.workflow_contracts import Plan

logger = logging.getLogger(__name__)

MAX_GENERATION_ROUNDS = 2

_PLAN_SCHEMA = """{
  "name": "<short plan name>",
  "successMessage": "<final message, may use {field} placeholders>",
  "steps": [
    {
      "function": "<function name from the registry>",
      "inputMapping": {"<parameter>": "<data field path or ${reservedName}>"},
      "outputAs": "<key for the result, optional>",
      "skipIf": "<optional condition over data, e.g. \\"appointment_id\\">",
      "waitForUser": {"field": "<data field>", "prompt": "<question to ask>"},
      "successMessage": "<optional>",
      "errorMessage": "<message shown if this step fails>"
    }
  ]
}"""


def _policy(env_name: str, default_model: str, timeout_default: str = "60") -> ModelPolicy:
    return ModelPolicy(
        model_name=os.getenv(env_name, "").strip() or default_model,
        temperature=0.0,
        timeout_seconds=max(1.0, float(os.getenv("MODEL_TIMEOUT_SECONDS", timeout_default))),
        max_retries=max(1, int(os.getenv("MODEL_MAX_RETRIES", "3"))),
        json_mode=True,
        max_tokens=2048,
    )


def plan_signature(plan: Plan) -> tuple:
    """Structural identity: function order, mappings, outputs, pauses and skip predicates."""
    return tuple(
        (
            step.function,
            tuple(sorted(step.input_mapping.items())),
            step.output_as or "",
            step.wait_for_user.field if step.wait_for_user else "",
            repr(step.skip_if),
        )
        for step in plan.steps
    )


class PlanSynthesizer:
    """Generates, merges and gates candidate plans."""

    def __init__(
        self,
        model_selector: ModelSelector,
        primary_policy: ModelPolicy | None = None,
        secondary_policy: ModelPolicy | None = None,
        merge_policy: ModelPolicy | None = None,
    ):
        self.model_selector = model_selector
        default_model = os.getenv("PLANNER_MODEL", "llama3.1:8b").strip() or "llama3.1:8b"
        self.primary_policy = primary_policy or _policy("PLANNER_PRIMARY_MODEL", default_model)
        self.secondary_policy = secondary_policy or _policy("PLANNER_SECONDARY_MODEL", default_model)
        self.merge_policy = merge_policy or _policy("PLANNER_MERGE_MODEL", self.primary_policy.model_name)

    async def synthesize(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        *,
        session_id: str | None = None,
    ) -> Plan:
        issues: list[str] = []
        for round_number in range(1, MAX_GENERATION_ROUNDS + 1):
            messages = self._generation_messages(config, intent, previous_issues=issues)
            first_raw, second_raw = await asyncio.gather(
                self.model_selector.generate(messages=messages, policy=self.primary_policy, session_id=session_id),
                self.model_selector.generate(messages=messages, policy=self.secondary_policy, session_id=session_id),
            )
            issues = []
            first = self._plan_from_payload(first_raw, config, intent, issues, label="candidate A")
            second = self._plan_from_payload(second_raw, config, intent, issues, label="candidate B")

            agreed: Plan | None = None
            if first is None or second is None:
                issues.append("consensus: fewer than two usable candidates")
            elif plan_signature(first) == plan_signature(second):
                logger.info("Plan candidates for '%s' are identical; skipping merge", intent.intent)
                agreed = first
            else:
                agreed = await self._merge(config, intent, first, second, issues, session_id)

            if agreed is not None:
                agreed_issues = check_plan_quality(agreed, config)
                if not agreed_issues:
                    logger.info(
                        "Synthesized plan for '%s' in round %d: %s",
                        intent.intent,
                        round_number,
                        " > ".join(agreed.function_sequence()),
                    )
                    return agreed
                issues.extend(agreed_issues)

            logger.warning(
                "Plan synthesis round %d for '%s' failed quality check: %s",
                round_number,
                intent.intent,
                issues,
            )

        raise WorkflowSynthesisError(intent.intent, issues or ["no usable candidate plan"])

    async def _merge(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        first: Plan,
        second: Plan,
        issues: list[str],
        session_id: str | None,
    ) -> Plan | None:
        messages = self._merge_messages(config, intent, first, second)
        payload = await self.model_selector.generate(messages=messages, policy=self.merge_policy, session_id=session_id)
        if not isinstance(payload, dict):
            issues.append("merge: response is not an object")
            return None
        logger.info(
            "Merge verdict for '%s': equivalent=%s reasoning=%s",
            intent.intent,
            payload.get("equivalent"),
            str(payload.get("reasoning", ""))[:200],
        )
        return self._plan_from_payload(payload.get("plan"), config, intent, issues, label="merged plan")

    def _plan_from_payload(
        self,
        payload: Any,
        config: DomainConfig,
        intent: IntentOutput,
        issues: list[str],
        *,
        label: str,
    ) -> Plan | None:
        if isinstance(payload, dict) and isinstance(payload.get("plan"), dict):
            payload = payload["plan"]
        if not isinstance(payload, dict):
            issues.append(f"{label}: not a JSON object")
            return None
        steps = payload.get("steps")
        if not isinstance(steps, list) or not steps:
            issues.append(f"{label}: no steps")
            return None
        try:
            return Plan(
                domain_id=config.domain_id,
                name=str(payload.get("name") or intent.intent.replace("_", " ").title()),
                intent_triggers=[intent.intent],
                steps=steps,
                provenance="synthesized",
                success_message=str(payload.get("successMessage") or payload.get("success_message") or ""),
            )
        except PydanticValidationError as exc:
            issues.append(f"{label}: invalid structure ({exc.error_count()} errors: {exc.errors()[0].get('msg', '')})")
            return None

    # ─── Prompt construction ──────────────────────────────────

    def _registry_block(self, config: DomainConfig) -> str:
        lines: list[str] = []
        for fn in config.functions.values():
            params = ", ".join(
                f"{name}:{spec.type.value}{'*' if spec.required else ''}" for name, spec in fn.parameters.items()
            )
            kind = "virtual" if fn.is_virtual else ("CRITICAL" if config.domain.is_critical(fn.name) else "external")
            lines.append(f"- {fn.name}({params}) [{kind}] {fn.description}".rstrip())
        return "\n".join(lines)

    def _entity_block(self, config: DomainConfig) -> str:
        if not config.entities:
            return "(none registered yet)"
        return "\n".join(
            f"- {name} ({entity.validation_type.value}){': ' + entity.extraction_hint if entity.extraction_hint else ''}"
            for name, entity in config.entities.items()
        )

    def _generation_messages(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        previous_issues: list[str],
    ) -> list[dict[str, str]]:
        reserved = ", ".join("${" + name + "}" for name in sorted(RESERVED_RUNTIME_NAMES))
        system_prompt = f"""You design reusable step-by-step workflows for a conversational assistant.
Return ONLY a JSON object with this schema:
{_PLAN_SCHEMA}

Functions (* = required parameter):
{self._registry_block(config)}

Known entities (data fields extracted from users):
{self._entity_block(config)}

Reserved template variables: {reserved}

Business rules:
{config.domain.business_rules.strip() or '(none)'}

Rules:
1. Use only the functions listed above.
2. inputMapping values are data field paths (e.g. "patient.PatNum") or reserved template variables. NEVER hardcode a date, time or other literal value.
3. For date ranges use ${{todayISO}} and ${{safeDateEnd}}.
4. When a required value may be missing, pause for it with waitForUser on that step or an earlier AskUser step.
5. A CRITICAL function must be preceded by a ConfirmWithUser step.
6. Use PresentOptions to let the user pick from a list output, and ExtractEntityId to pull an id out of a list.
7. The plan must work for every future user with this intent, not only this one.
8. Return ONLY the JSON object."""

        request = {
            "intent": intent.intent,
            "example_utterance": intent.original_query,
            "entities_already_extracted": intent.entities,
        }
        if previous_issues:
            request["previous_attempt_issues"] = previous_issues
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": json.dumps(request, ensure_ascii=False, default=str)},
        ]

    def _merge_messages(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        first: Plan,
        second: Plan,
    ) -> list[dict[str, str]]:
        system_prompt = f"""You review two candidate workflows for the same intent.
Decide whether they are logically equivalent (same step ordering intent, same data dependencies).
Return ONLY JSON:
{{"equivalent": true|false, "reasoning": "<short>", "plan": <the agreed plan, or a merge of the best parts, using the schema below>}}

Plan schema:
{_PLAN_SCHEMA}

Functions:
{self._registry_block(config)}

Never hardcode dates or literal values in inputMapping; keep ConfirmWithUser before CRITICAL functions."""

        def _dump(plan: Plan) -> dict[str, Any]:
            return {
                "name": plan.name,
                "successMessage": plan.success_message,
                "steps": [step.model_dump(by_alias=True, exclude_none=True) for step in plan.steps],
            }

        request = {"intent": intent.intent, "candidate_a": _dump(first), "candidate_b": _dump(second)}
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": json.dumps(request, ensure_ascii=False, default=str)},
        ]
