"""
Turn Orchestrator - the inbound turn interface.

Responsibility:
- Serialize turns of one session within this worker
- Resume a paused plan, or resolve the intent (Layer 1, then Layer 2)
- Resolve a plan (Layer 3) and run it (Layer 4), or route to the fallback
- Convert engine errors into user-facing turns

Prohibitions:
- No business logic
- No direct domain API calls
"""

import logging
from typing import Any

from conversation.manager import ConversationManager
from execution.engine import ExecutionEngine, ExecutionResult
from execution.fallback import FallbackExecutor
from intent.matcher import IntentMatcher
from intent.validator import IntentValidator
from memory.store import EngineStore
from planner.resolver import WorkflowResolver
from registry.loader import DomainConfig, DomainConfigLoader
from shared.errors import (
    ExternalCallError,
    IntentAmbiguityError,
    StateCorruptionError,
    WorkflowSynthesisError,
)
from shared.locks import KeyedMutex
from shared.models import EntryRequest, IntentOutput, TurnResponse
from shared.templates import domain_now
from shared.workflow_contracts import SessionState

logger = logging.getLogger(__name__)

RESTART_MESSAGE = "Sorry, I lost track of our conversation. Could you tell me again what you need?"
UNAVAILABLE_MESSAGE = "Sorry, I'm having trouble right now. Please try again in a moment."


class TurnOrchestrator:
    """Handles one conversational turn end to end."""

    def __init__(
        self,
        config_loader: DomainConfigLoader,
        store: EngineStore,
        matcher: IntentMatcher,
        validator: IntentValidator,
        resolver: WorkflowResolver,
        engine: ExecutionEngine,
        fallback: FallbackExecutor,
        conversation: ConversationManager | None = None,
    ):
        self.config_loader = config_loader
        self.store = store
        self.matcher = matcher
        self.validator = validator
        self.resolver = resolver
        self.engine = engine
        self.fallback = fallback
        self.conversation = conversation
        self._session_locks = KeyedMutex()

    async def handle_turn(self, request: EntryRequest) -> TurnResponse:
        """Process one utterance. DomainNotFoundError propagates to the caller."""
        async with self._session_locks.acquire(request.session_id):
            config = self.config_loader.load(request.domain_id)
            history = self.conversation.as_messages(request.session_id) if self.conversation else []
            self._remember(request, "user", request.input_text)
            try:
                response = await self._handle(request, config, history)
            except StateCorruptionError as exc:
                logger.warning("Session %s corrupted, clearing: %s", request.session_id, exc)
                self.store.delete_session(request.session_id)
                if self.conversation is not None:
                    self.conversation.clear_session(request.session_id)
                response = TurnResponse(text=RESTART_MESSAGE, metadata={"path": "reset", "error_type": "state_corruption"})
            self._remember(request, "assistant", response.text, response.metadata)
        return response

    async def _handle(self, request: EntryRequest, config: DomainConfig, history: list[dict]) -> TurnResponse:
        session = self.store.get_session(request.session_id)
        if session is None or session.domain_id != config.domain_id:
            session = SessionState(session_id=request.session_id, domain_id=config.domain_id)

        if session.waiting_for_user and session.active_plan_id:
            return await self._resume(request, session, config)

        intent = await self._resolve_intent(request, session, config, history)
        if isinstance(intent, TurnResponse):
            return intent

        session = session.touched(clarification_attempts=0, clarification_context={})
        try:
            plan = await self.resolver.resolve(config, intent, session_id=request.session_id)
        except WorkflowSynthesisError as exc:
            logger.info("Synthesis abandoned for '%s', using fallback: %s", intent.intent, exc.issues)
            return await self._run_fallback(request, session, config, intent, history)
        except ExternalCallError as exc:
            logger.warning("Plan synthesis unavailable: %s", exc)
            self.store.save_session(session)
            return TurnResponse(text=UNAVAILABLE_MESSAGE, metadata={"path": "error", "error_type": "external_call_error"})

        result = await self.engine.start(plan, session, config, intent.entities)
        return self._response(
            result,
            {
                "path": "plan",
                "intent": intent.intent,
                "intent_source": intent.source,
                "new_intent": intent.is_new,
                "plan_id": plan.id,
                "provenance": plan.provenance,
            },
        )

    async def _resume(self, request: EntryRequest, session: SessionState, config: DomainConfig) -> TurnResponse:
        plan = self.store.get_plan_by_id(session.active_plan_id or "")
        if plan is None or session.step_index >= len(plan.steps):
            raise StateCorruptionError(
                f"Session {session.session_id} references plan '{session.active_plan_id}' at step {session.step_index}"
            )
        result = await self.engine.resume(session, plan, config, request.input_text)
        return self._response(
            result,
            {"path": "plan", "intent": session.active_intent, "plan_id": plan.id, "provenance": plan.provenance, "resumed": True},
        )

    async def _resolve_intent(
        self,
        request: EntryRequest,
        session: SessionState,
        config: DomainConfig,
        history: list[dict],
    ) -> IntentOutput | TurnResponse:
        clarification = session.clarification_context or None
        if clarification is None:
            matched = self.matcher.match(request.input_text, config.triggers)
            if matched is not None:
                return matched

        attempt = session.clarification_attempts + 1
        today = domain_now(config.domain).date()
        try:
            validation = await self.validator.validate(
                request.input_text,
                config,
                known_intents=self._known_intents(config),
                today=today,
                attempt=attempt,
                history=None if clarification else history,
                clarification=clarification,
                session_id=request.session_id,
            )
        except IntentAmbiguityError as exc:
            self.store.save_session(session.touched(clarification_attempts=0, clarification_context={}, status="idle"))
            return TurnResponse(text=str(exc), metadata={"path": "clarification", "error_type": "intent_ambiguity"})
        except ExternalCallError as exc:
            logger.warning("Intent validation unavailable: %s", exc)
            return TurnResponse(text=UNAVAILABLE_MESSAGE, metadata={"path": "error", "error_type": "external_call_error"})

        if validation.intent is not None:
            if validation.is_new_intent:
                logger.info(
                    "New intent '%s' for %s (confidence=%.2f); plan synthesis candidate",
                    validation.intent.intent,
                    config.domain_id,
                    validation.intent.confidence,
                )
            return validation.intent

        context = {
            "original": (clarification or {}).get("original") or request.input_text,
            "question": validation.clarification_question,
        }
        self.store.save_session(
            session.touched(clarification_attempts=attempt, clarification_context=context, status="idle")
        )
        return TurnResponse(
            text=validation.clarification_question or "Could you rephrase that?",
            session_state={"status": "idle", "clarification_attempts": attempt},
            metadata={"path": "clarification", "attempt": attempt},
        )

    async def _run_fallback(
        self,
        request: EntryRequest,
        session: SessionState,
        config: DomainConfig,
        intent: IntentOutput,
        history: list[dict],
    ) -> TurnResponse:
        try:
            outcome = await self.fallback.execute(
                config,
                intent,
                request.input_text,
                history=history,
                session_id=request.session_id,
                today=domain_now(config.domain).date(),
            )
        except ExternalCallError as exc:
            logger.warning("Fallback unavailable: %s", exc)
            self.store.save_session(session)
            return TurnResponse(text=UNAVAILABLE_MESSAGE, metadata={"path": "error", "error_type": "external_call_error"})

        finished = session.touched(
            active_plan_id=None,
            active_intent=intent.intent,
            step_index=0,
            status="completed" if outcome.success else "failed",
        )
        self.store.save_session(finished)
        return TurnResponse(
            text=outcome.message,
            session_state=self._session_view(finished),
            terminal=True,
            metadata={
                "path": "fallback",
                "intent": intent.intent,
                "functions": outcome.function_sequence,
                "success": outcome.success,
            },
        )

    # ─── Helpers ───────────────────────────────────────────────

    def _known_intents(self, config: DomainConfig) -> list[str]:
        intents = config.known_intents()
        for plan in self.store.list_plans(config.domain_id):
            for trigger in plan.intent_triggers:
                if trigger not in intents:
                    intents.append(trigger)
        return intents

    def _response(self, result: ExecutionResult, metadata: dict[str, Any]) -> TurnResponse:
        meta = dict(metadata)
        meta["status"] = result.status
        if result.error_type:
            meta["error_type"] = result.error_type
        if result.function_calls:
            meta["functions"] = result.function_calls
        return TurnResponse(
            text=result.message,
            session_state=self._session_view(result.session),
            terminal=result.terminal,
            metadata=meta,
        )

    def _session_view(self, session: SessionState) -> dict[str, Any]:
        return {
            "status": session.status,
            "active_plan_id": session.active_plan_id,
            "step_index": session.step_index,
            "waiting_for_user": session.waiting_for_user,
            "pending_field": session.pending_field,
        }

    def _remember(self, request: EntryRequest, role: str, content: str, metadata: dict | None = None) -> None:
        if self.conversation is None:
            return
        self.conversation.save(request.session_id, role, content, domain_id=request.domain_id, metadata=metadata)
