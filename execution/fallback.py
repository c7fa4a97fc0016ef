"""
Fallback Executor - direct function calling when no plan is available.

Responsibility:
- Offer the domain's external functions to a model in a bounded loop
- Validate and dispatch each requested call like a plan step
- Feed results (or errors) back into the next model turn
- Report the run to the pattern learner
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from learning.pattern_learner import PatternLearner
from models.selector import ModelSelector
from observability.events import record_engine_event
from registry.http_handler import DomainApiClient
from registry.loader import DomainConfig
from shared.errors import ExternalCallError, ValidationError
from shared.models import IntentOutput, ModelPolicy

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = "Sorry, I couldn't complete that request right now."


@dataclass
class FallbackResult:
    message: str
    function_sequence: list[str] = field(default_factory=list)
    success: bool = False
    responded: bool = False
    results: list[dict[str, Any]] = field(default_factory=list)


class FallbackExecutor:
    """Bounded call/respond loop over the domain's external functions."""

    def __init__(
        self,
        model_selector: ModelSelector,
        domain_client: DomainApiClient,
        learner: PatternLearner | None = None,
        policy: ModelPolicy | None = None,
        max_calls: int | None = None,
        step_timeout_seconds: float | None = None,
    ):
        self.model_selector = model_selector
        self.domain_client = domain_client
        self.learner = learner
        model_name = os.getenv("FALLBACK_MODEL", "").strip() or os.getenv("PLANNER_MODEL", "llama3.1:8b")
        self.policy = policy or ModelPolicy(
            model_name=model_name,
            temperature=0.0,
            timeout_seconds=max(1.0, float(os.getenv("MODEL_TIMEOUT_SECONDS", "30"))),
            max_retries=max(1, int(os.getenv("MODEL_MAX_RETRIES", "3"))),
            json_mode=True,
        )
        self.max_calls = max_calls if max_calls is not None else int(os.getenv("FALLBACK_MAX_CALLS", "4"))
        self.step_timeout_seconds = (
            step_timeout_seconds if step_timeout_seconds is not None else float(os.getenv("STEP_TIMEOUT_SECONDS", "60"))
        )

    async def execute(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        utterance: str,
        *,
        history: list[dict] | None = None,
        session_id: str = "",
        today: date | None = None,
    ) -> FallbackResult:
        day = today or date.today()
        messages = self._build_messages(config, intent, utterance, history, day)
        result = FallbackResult(message=DEFAULT_RESPONSE)
        all_ok = True
        external = {fn.name for fn in config.external_functions()}

        for _turn in range(self.max_calls + 1):
            if len(result.function_sequence) >= self.max_calls:
                messages.append(
                    {"role": "user", "content": "Call budget exhausted. Respond to the user now with action 'respond'."}
                )
            payload = await self.model_selector.generate(messages=messages, policy=self.policy, session_id=session_id)
            messages.append({"role": "assistant", "content": json.dumps(payload, ensure_ascii=False, default=str)})
            action = str(payload.get("action", "")).strip().lower()

            if action == "respond" or (action != "call" and payload.get("message")):
                result.message = str(payload.get("message") or "").strip() or DEFAULT_RESPONSE
                result.responded = True
                break

            if action != "call" or len(result.function_sequence) >= self.max_calls:
                logger.warning("Fallback model returned an unusable action: %s", payload)
                all_ok = False
                break

            function = str(payload.get("function", "")).strip()
            parameters = payload.get("parameters") if isinstance(payload.get("parameters"), dict) else {}
            if function not in external:
                all_ok = False
                messages.append({"role": "user", "content": json.dumps({"error": f"Unknown function '{function}'"})})
                continue

            try:
                cleaned = config.validators[function].validate(parameters, day)
            except ValidationError as exc:
                all_ok = False
                messages.append(
                    {"role": "user", "content": json.dumps({"function": function, "validation_errors": exc.errors})}
                )
                continue

            result.function_sequence.append(function)
            try:
                output = await asyncio.wait_for(
                    self.domain_client.call(
                        config.domain,
                        function,
                        cleaned,
                        idempotent=config.is_idempotent(function),
                        session_id=session_id,
                    ),
                    timeout=self.step_timeout_seconds,
                )
            except (ExternalCallError, asyncio.TimeoutError) as exc:
                all_ok = False
                logger.warning("Fallback call %s failed: %s", function, exc)
                messages.append({"role": "user", "content": json.dumps({"function": function, "error": str(exc)})})
                continue

            all_ok = all_ok and output.success
            entry = {"function": function, "success": output.success, "data": output.data, "error": output.error}
            result.results.append(entry)
            messages.append({"role": "user", "content": json.dumps({"result": entry}, ensure_ascii=False, default=str)})

        result.success = bool(result.function_sequence) and all_ok and result.responded
        logger.info(
            "Fallback for '%s' finished: calls=%s success=%s",
            intent.intent,
            result.function_sequence,
            result.success,
        )
        if self.learner is not None:
            record_engine_event(
                self.learner.store,
                session_id=session_id,
                domain_id=config.domain_id,
                event_type="fallback_completed",
                payload={"intent": intent.intent, "functions": result.function_sequence, "success": result.success},
            )
            self.learner.record(
                config.domain_id,
                intent.intent,
                result.function_sequence,
                result.success,
                session_id=session_id,
            )
        return result

    def _build_messages(
        self,
        config: DomainConfig,
        intent: IntentOutput,
        utterance: str,
        history: list[dict] | None,
        today: date,
    ) -> list[dict[str, str]]:
        functions = [
            {
                "name": fn.name,
                "description": fn.description,
                "parameters": {
                    name: {"type": spec.type.value, "required": spec.required, "description": spec.description}
                    for name, spec in fn.parameters.items()
                },
            }
            for fn in config.external_functions()
        ]
        persona = config.domain.persona.strip() or "You are a helpful assistant."
        system_prompt = f"""{persona}

You can call these functions, one at a time:
{json.dumps(functions, ensure_ascii=False, indent=2)}

Business rules:
{config.domain.business_rules.strip() or '(none)'}

Today is {today.isoformat()}.

Reply with ONLY one JSON object per turn:
- {{"action": "call", "function": "<name>", "parameters": {{...}}}} to call a function
- {{"action": "respond", "message": "<reply to the user>"}} when you are done

Rules:
1. Use only the functions listed.
2. After each call you receive its result; use it in later calls.
3. Use at most {self.max_calls} calls, then respond."""

        messages = [{"role": "system", "content": system_prompt}]
        for turn in (history or [])[-6:]:
            messages.append({"role": turn.get("role", "user"), "content": turn.get("content", "")})
        request = {"utterance": utterance, "intent": intent.intent, "entities": intent.entities}
        messages.append({"role": "user", "content": json.dumps(request, ensure_ascii=False, default=str)})
        return messages
