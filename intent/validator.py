"""
Intent Validator (Layer 2) - dual independent extraction with semantic comparison.

Responsibility:
- Run two structured extractions concurrently (persona framing, neutral framing)
- Compare them with the equivalence predicate, never string equality
- Produce a targeted clarification question on disagreement
- Raise IntentAmbiguityError once the attempt bound is reached
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from intent.equivalence import UNKNOWN_INTENT, ExtractionComparison, compare_extractions
from models.selector import ModelSelector
from registry.loader import DomainConfig
from shared.errors import ExternalCallError, IntentAmbiguityError
from shared.models import RESERVED_RUNTIME_NAMES, IntentOutput, ModelPolicy

logger = logging.getLogger(__name__)

_SCHEMA_BLOCK = """{
  "intent": "<snake_case intent name>",
  "entities": {"<entity name>": "<value as the user said it>"},
  "confidence": <float 0.0-1.0>
}"""


def _policy_from_env(env_name: str, default_model: str) -> ModelPolicy:
    model_name = os.getenv(env_name, "").strip() or default_model
    return ModelPolicy(
        model_name=model_name,
        temperature=0.0,
        timeout_seconds=max(1.0, float(os.getenv("MODEL_TIMEOUT_SECONDS", "20"))),
        max_retries=max(1, int(os.getenv("MODEL_MAX_RETRIES", "3"))),
        json_mode=True,
    )


@dataclass
class IntentValidation:
    """Outcome of one Layer 2 attempt: either an intent or a clarification question."""

    intent: IntentOutput | None = None
    clarification_question: str | None = None
    is_new_intent: bool = False
    comparison: ExtractionComparison | None = None
    raw: list[dict[str, Any]] = field(default_factory=list)


class IntentValidator:
    """Two independent extractions, compared semantically."""

    def __init__(
        self,
        model_selector: ModelSelector,
        primary_policy: ModelPolicy | None = None,
        secondary_policy: ModelPolicy | None = None,
        max_attempts: int | None = None,
        min_confidence: float | None = None,
    ):
        self.model_selector = model_selector
        default_model = os.getenv("INTENT_MODEL_NAME", "llama3.1:8b").strip() or "llama3.1:8b"
        self.primary_policy = primary_policy or _policy_from_env("INTENT_PRIMARY_MODEL", default_model)
        self.secondary_policy = secondary_policy or _policy_from_env("INTENT_SECONDARY_MODEL", default_model)
        self.max_attempts = max_attempts if max_attempts is not None else int(os.getenv("INTENT_MAX_ATTEMPTS", "3"))
        self.min_confidence = (
            min_confidence if min_confidence is not None else float(os.getenv("INTENT_MIN_CONFIDENCE", "0.5"))
        )

    async def validate(
        self,
        utterance: str,
        config: DomainConfig,
        *,
        known_intents: list[str],
        today: date,
        attempt: int = 1,
        history: list[dict] | None = None,
        clarification: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> IntentValidation:
        """Run one validation attempt. ``attempt`` is 1-based and spans turns."""
        persona_messages = self._build_messages(
            self._persona_system_prompt(config, known_intents, today), utterance, history, clarification
        )
        neutral_messages = self._build_messages(
            self._neutral_system_prompt(config, known_intents, today), utterance, history, clarification
        )
        first, second = await asyncio.gather(
            self._extract(persona_messages, self.primary_policy, session_id),
            self._extract(neutral_messages, self.secondary_policy, session_id),
        )

        entity_kinds = {name: entity.validation_type for name, entity in config.entities.items()}
        comparison = compare_extractions(first, second, entity_kinds, today)

        if comparison.agree:
            is_new = comparison.intent not in known_intents or comparison.confidence < self.min_confidence
            entities = {k: v for k, v in comparison.entities.items() if k not in RESERVED_RUNTIME_NAMES}
            logger.info(
                "Layer 2 agreed on intent '%s' (confidence=%.2f, new=%s)",
                comparison.intent,
                comparison.confidence,
                is_new,
            )
            return IntentValidation(
                intent=IntentOutput(
                    intent=comparison.intent,
                    entities=entities,
                    confidence=comparison.confidence,
                    source="validated",
                    is_new=is_new,
                    original_query=(clarification or {}).get("original") or utterance,
                ),
                is_new_intent=is_new,
                comparison=comparison,
                raw=[first, second],
            )

        if attempt >= self.max_attempts:
            raise IntentAmbiguityError(
                attempt,
                "I'm still not sure what you need. Could you restate your request in a single sentence?",
            )

        return IntentValidation(
            clarification_question=self.clarification_question(comparison, first, second),
            comparison=comparison,
            raw=[first, second],
        )

    async def _extract(self, messages: list[dict], policy: ModelPolicy, session_id: str | None) -> dict[str, Any]:
        payload = await self.model_selector.generate(messages=messages, policy=policy, session_id=session_id)
        if not isinstance(payload, dict):
            raise ExternalCallError("model", "Intent extraction returned a non-object payload")
        return payload

    def clarification_question(
        self,
        comparison: ExtractionComparison,
        first: dict[str, Any],
        second: dict[str, Any],
    ) -> str:
        """Question aimed at the point of disagreement."""
        if comparison.competing_intents:
            options = [
                item.replace("_", " ")
                for item in dict.fromkeys(comparison.competing_intents)
                if item and item != UNKNOWN_INTENT
            ]
            if len(options) >= 2:
                return f"Just to make sure I understand: do you want to {options[0]} or {options[1]}?"
            if len(options) == 1:
                return f"Do you want to {options[0]}? If not, could you tell me what you'd like to do?"
            return "Could you tell me a bit more about what you'd like to do?"

        name = comparison.conflicting_entities[0]
        label = name.replace("_", " ")
        value_a = (first.get("entities") or {}).get(name)
        value_b = (second.get("entities") or {}).get(name)
        return f"Just to confirm the {label}: did you mean {value_a} or {value_b}?"

    # ─── Prompt construction ──────────────────────────────────

    def _vocabulary_block(self, config: DomainConfig, known_intents: list[str], today: date) -> str:
        lines = [f"Today is {today.isoformat()} ({today.strftime('%A')})."]
        if known_intents:
            lines.append("Known intents:")
            lines.extend(f"- {intent}" for intent in known_intents)
        lines.append(
            "If none fits, name a NEW intent in snake_case (verb_object). "
            f"Use \"{UNKNOWN_INTENT}\" only when the request is unintelligible."
        )
        if config.entities:
            lines.append("Entities you may extract (use these exact names):")
            for name, entity in config.entities.items():
                hint = f": {entity.extraction_hint}" if entity.extraction_hint else ""
                lines.append(f"- {name} ({entity.validation_type.value}){hint}")
        return "\n".join(lines)

    def _persona_system_prompt(self, config: DomainConfig, known_intents: list[str], today: date) -> str:
        persona = config.domain.persona.strip() or f"You are the assistant for {config.domain.display_name or config.domain.id}."
        return f"""{persona}

Read the customer's message and decide what they want. Return ONLY a valid JSON object:
{_SCHEMA_BLOCK}

{self._vocabulary_block(config, known_intents, today)}

Rules:
1. Only include entities the customer actually stated. Never guess.
2. Keep relative dates as said (e.g. "next Tuesday").
3. Return ONLY the JSON object."""

    def _neutral_system_prompt(self, config: DomainConfig, known_intents: list[str], today: date) -> str:
        return f"""You are a neutral information extraction engine. You do not converse.
Return ONLY a valid JSON object. No explanations, no markdown.

Schema:
{_SCHEMA_BLOCK}

{self._vocabulary_block(config, known_intents, today)}

Rules:
1. Extract only values present in the text. Omit entity keys you are unsure about.
2. Resolve relative dates to YYYY-MM-DD using today's date.
3. Confidence reflects how certain the intent is, 0.0-1.0.
4. Return ONLY the JSON object."""

    def _build_messages(
        self,
        system_prompt: str,
        utterance: str,
        history: list[dict] | None,
        clarification: dict[str, Any] | None,
    ) -> list[dict]:
        messages = [{"role": "system", "content": system_prompt}]
        if history:
            for turn in history[-6:]:
                messages.append({"role": turn.get("role", "user"), "content": turn.get("content", "")})
        if clarification and clarification.get("original"):
            messages.append({"role": "user", "content": str(clarification["original"])})
            if clarification.get("question"):
                messages.append({"role": "assistant", "content": str(clarification["question"])})
        messages.append({"role": "user", "content": utterance})
        return messages
