import asyncio
import copy
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from conversation.manager import ConversationManager
from entry.cli import CLIAdapter
from execution.engine import ExecutionEngine
from execution.fallback import FallbackExecutor
from intent.matcher import IntentMatcher
from intent.validator import IntentValidator
from learning.pattern_learner import PatternLearner
from main import bootstrap_configuration
from memory.store import SQLiteEngineStore
from orchestrator.orchestrator import RESTART_MESSAGE, UNAVAILABLE_MESSAGE, TurnOrchestrator
from planner.resolver import WorkflowResolver
from planner.synthesizer import PlanSynthesizer
from registry.db import RegistryDB
from registry.loader import DomainConfigLoader, read_bootstrap_payload
from shared.errors import DomainNotFoundError, ExternalCallError, WorkflowSynthesisError
from shared.models import DomainOutput, EntryRequest, ModelPolicy
from shared.workflow_contracts import SessionState

EXAMPLE_BOOTSTRAP = Path(__file__).parent / "domains.example.json"


class _DummySelector:
    def __init__(self, scripts: dict[str, list] | None = None):
        self.scripts = {name: list(items) for name, items in (scripts or {}).items()}
        self.calls: list[dict] = []

    async def generate(self, messages, policy, session_id=None):
        self.calls.append({"model": policy.model_name, "messages": messages})
        return copy.deepcopy(self.scripts[policy.model_name].pop(0))


class _DummyDomainClient:
    def __init__(self):
        self.calls: list[dict] = []

    async def call(self, domain, function, parameters, *, idempotent=False, session_id=None):
        self.calls.append({"function": function, "parameters": dict(parameters)})
        if function == "SearchPatients":
            return DomainOutput(success=True, data=[{"PatNum": 42, "LName": "Smith", "FName": "Ann"}])
        if function == "GetAvailableSlots":
            return DomainOutput(
                success=True,
                data=[
                    {"AptDateTime": "2030-01-15T09:00:00", "label": "Tue Jan 15, 9:00 AM"},
                    {"AptDateTime": "2030-01-16T10:00:00", "label": "Wed Jan 16, 10:00 AM"},
                ],
            )
        return DomainOutput(success=True, data={"AptNum": 7})


def _orchestrator(tmp_path, selector, domain_client, synthesizer=None):
    loader = DomainConfigLoader(RegistryDB(db_path=str(tmp_path / "registry.db")))
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    conversation = ConversationManager(db_path=str(tmp_path / "conversations.db"))
    bootstrap_configuration(loader, store, read_bootstrap_payload(file_path=str(EXAMPLE_BOOTSTRAP)))
    if synthesizer is None:
        synthesizer = MagicMock()
        synthesizer.synthesize = AsyncMock(side_effect=WorkflowSynthesisError("find_patient", ["no usable plan"]))

    orchestrator = TurnOrchestrator(
        config_loader=loader,
        store=store,
        matcher=IntentMatcher(),
        validator=IntentValidator(
            selector,
            primary_policy=ModelPolicy(model_name="intent-a"),
            secondary_policy=ModelPolicy(model_name="intent-b"),
        ),
        resolver=WorkflowResolver(store, synthesizer, config_loader=loader),
        engine=ExecutionEngine(store, domain_client, step_timeout_seconds=5),
        fallback=FallbackExecutor(
            selector,
            domain_client,
            learner=PatternLearner(store),
            policy=ModelPolicy(model_name="fallback"),
        ),
        conversation=conversation,
    )
    return orchestrator, store, conversation


def _request(text: str, session_id: str = "s1", domain_id: str = "dental") -> EntryRequest:
    return EntryRequest(session_id=session_id, domain_id=domain_id, input_text=text)


def test_trigger_phrase_runs_configured_plan_without_model_calls(tmp_path):
    async def _run() -> None:
        selector = _DummySelector()
        client = _DummyDomainClient()
        orchestrator, store, conversation = _orchestrator(tmp_path, selector, client)
        try:
            response = await orchestrator.handle_turn(_request("I want to book a cleaning"))
            assert response.text == "Sure! What's the patient's last name?"
            assert response.terminal is False
            assert response.metadata["intent_source"] == "trigger"
            assert response.metadata["provenance"] == "configured"
            assert response.session_state["pending_field"] == "last_name"

            response = await orchestrator.handle_turn(_request("Smith"))
            assert response.text == "And the date of birth?"
            assert response.metadata["resumed"] is True

            response = await orchestrator.handle_turn(_request("May 17, 1980"))
            assert response.text.startswith("Here are the next open times:")
            assert "2. Wed Jan 16, 10:00 AM" in response.text

            response = await orchestrator.handle_turn(_request("2"))
            assert response.text == "Book Smith on 2030-01-16T10:00:00?"

            response = await orchestrator.handle_turn(_request("yes"))
            assert response.terminal is True
            assert response.metadata["status"] == "completed"
            assert response.text == "You're booked for 2030-01-16T10:00:00. See you then!"

            assert selector.calls == []
            assert [call["function"] for call in client.calls] == [
                "SearchPatients",
                "GetAvailableSlots",
                "CreateAppointment",
            ]
            assert client.calls[-1]["parameters"]["PatNum"] == 42
            assert len(conversation.get_history("s1")) == 10
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())


def test_clarification_then_synthesis_failure_routes_to_fallback(tmp_path):
    async def _run() -> None:
        selector = _DummySelector(
            {
                "intent-a": [
                    {"intent": "find_patient", "entities": {}, "confidence": 0.9},
                    {"intent": "find_patient", "entities": {"last_name": "Smith"}, "confidence": 0.9},
                ],
                "intent-b": [
                    {"intent": "check_balance", "entities": {}, "confidence": 0.7},
                    {"intent": "find_patient", "entities": {"last_name": "Smith"}, "confidence": 0.8},
                ],
                "fallback": [
                    {"action": "call", "function": "SearchPatients", "parameters": {"LName": "Smith"}},
                    {"action": "respond", "message": "I found Smith, patient #42."},
                ],
            }
        )
        client = _DummyDomainClient()
        orchestrator, store, conversation = _orchestrator(tmp_path, selector, client)
        try:
            response = await orchestrator.handle_turn(_request("I need something about Smith"))
            assert response.text == "Just to make sure I understand: do you want to find patient or check balance?"
            assert response.metadata == {"path": "clarification", "attempt": 1}
            assert store.get_session("s1").clarification_attempts == 1

            response = await orchestrator.handle_turn(_request("Look up the patient record"))
            assert response.text == "I found Smith, patient #42."
            assert response.terminal is True
            assert response.metadata["path"] == "fallback"
            assert response.metadata["functions"] == ["SearchPatients"]

            # The clarification turn replays the original request to both models.
            replayed = [message["content"] for message in selector.calls[2]["messages"]]
            assert "I need something about Smith" in replayed
            assert client.calls == [{"function": "SearchPatients", "parameters": {"LName": "Smith"}}]

            session = store.get_session("s1")
            assert session.status == "completed"
            assert session.active_plan_id is None
            assert session.clarification_attempts == 0
            assert len(store.list_observations(domain_id="dental")) == 1
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())


def test_corrupted_session_is_reset(tmp_path):
    async def _run() -> None:
        orchestrator, store, conversation = _orchestrator(tmp_path, _DummySelector(), _DummyDomainClient())
        try:
            store.save_session(
                SessionState(
                    session_id="s3",
                    domain_id="dental",
                    active_plan_id="plan-gone",
                    status="waiting_user",
                    waiting_for_user=True,
                    pending_field="last_name",
                )
            )

            response = await orchestrator.handle_turn(_request("Smith", session_id="s3"))

            assert response.text == RESTART_MESSAGE
            assert response.metadata["error_type"] == "state_corruption"
            assert store.get_session("s3") is None
            assert [turn["content"] for turn in conversation.get_history("s3")] == [RESTART_MESSAGE]
            assert len(orchestrator._session_locks) == 0
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())


def test_model_outage_returns_unavailable_message(tmp_path):
    async def _run() -> None:
        selector = MagicMock()
        selector.generate = AsyncMock(side_effect=ExternalCallError("model", "connection refused", retryable=True))
        orchestrator, store, conversation = _orchestrator(tmp_path, selector, _DummyDomainClient())
        try:
            response = await orchestrator.handle_turn(_request("What are your opening hours?"))

            assert response.text == UNAVAILABLE_MESSAGE
            assert response.metadata["error_type"] == "external_call_error"
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())


def test_unknown_domain_propagates(tmp_path):
    async def _run() -> None:
        orchestrator, store, conversation = _orchestrator(tmp_path, _DummySelector(), _DummyDomainClient())
        try:
            with pytest.raises(DomainNotFoundError):
                await orchestrator.handle_turn(_request("book", domain_id="vet"))
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())


def test_cli_adapter_normalizes_input():
    cli = CLIAdapter(domain_id="dental", session_id="abc")

    request = cli.read_input("  book a cleaning \n")

    assert request == EntryRequest(
        session_id="abc",
        domain_id="dental",
        input_text="book a cleaning",
        metadata={"source": "cli"},
    )
    assert len(CLIAdapter(domain_id="dental").session_id) == 8


FIND_PATIENT_PLAN = {
    "name": "Find patient",
    "successMessage": "Found patient #{patient_id}.",
    "steps": [
        {"function": "SearchPatients", "inputMapping": {"LName": "last_name"}, "outputAs": "patients"},
        {
            "function": "ExtractEntityId",
            "inputMapping": {"items": "patients", "LName": "last_name"},
            "outputAs": "patient_id",
        },
    ],
}


def test_new_intent_is_synthesized_once_then_served_from_cache(tmp_path):
    async def _run() -> None:
        extraction = {"intent": "find_patient", "entities": {"last_name": "Smith"}, "confidence": 0.9}
        selector = _DummySelector(
            {
                "intent-a": [extraction, extraction],
                "intent-b": [extraction, extraction],
                "plan-a": [FIND_PATIENT_PLAN],
                "plan-b": [FIND_PATIENT_PLAN],
            }
        )
        synthesizer = PlanSynthesizer(
            selector,
            primary_policy=ModelPolicy(model_name="plan-a"),
            secondary_policy=ModelPolicy(model_name="plan-b"),
            merge_policy=ModelPolicy(model_name="plan-merge"),
        )
        client = _DummyDomainClient()
        orchestrator, store, conversation = _orchestrator(tmp_path, selector, client, synthesizer=synthesizer)
        try:
            first = await orchestrator.handle_turn(_request("Could you pull up the record for Smith?"))
            second = await orchestrator.handle_turn(_request("Please look up Smith again"))

            assert first.text == "Found patient #42."
            assert second.text == "Found patient #42."
            assert first.metadata["intent_source"] == "validated"
            assert first.metadata["new_intent"] is True
            assert second.metadata["new_intent"] is False
            assert first.metadata["provenance"] == "synthesized"
            assert second.metadata["plan_id"] == first.metadata["plan_id"]

            models = [call["model"] for call in selector.calls]
            assert models.count("plan-a") == 1
            assert models.count("plan-b") == 1
            assert models.count("intent-a") == 2
            assert "plan-merge" not in models
            assert len(store.list_events(event_type="plan_synthesized")) == 1
            assert store.get_plan_by_id(first.metadata["plan_id"]).times_used == 1
            assert [call["function"] for call in client.calls] == ["SearchPatients", "SearchPatients"]
            assert len(orchestrator.resolver._locks) == 0
        finally:
            store.close()
            conversation.close()

    asyncio.run(_run())
