from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from execution.fallback import FallbackExecutor
from learning.pattern_learner import PatternLearner, fingerprint, snake_case
from memory.store import SQLiteEngineStore
from registry.loader import DomainConfig, builtin_virtual_functions
from registry.validators import build_registry_validators
from shared.errors import ConfigurationError, PatternNotFoundError, PatternNotSuggestedError
from shared.models import (
    Domain,
    DomainOutput,
    EntityDefinition,
    FunctionDefinition,
    IntentOutput,
    ModelPolicy,
    ValidatorKind,
)


class _DummySelector:
    def __init__(self, payloads: list[dict]):
        self.payloads = list(payloads)
        self.calls: list[list[dict]] = []

    async def generate(self, messages, policy, session_id=None):
        self.calls.append(list(messages))
        return self.payloads.pop(0)


class _DummyDomainClient:
    def __init__(self):
        self.calls: list[dict] = []

    async def call(self, domain, function, parameters, *, idempotent=False, session_id=None):
        self.calls.append({"function": function, "parameters": dict(parameters)})
        if function == "SearchPatients":
            return DomainOutput(success=True, data=[{"PatNum": 42, "LName": parameters["LName"]}])
        return DomainOutput(success=True, data={"AptNum": 7})


def _config() -> DomainConfig:
    functions = [
        FunctionDefinition(
            name="SearchPatients",
            parameters={"LName": {"type": "name", "required": True}},
            domain_id="dental",
        ),
        FunctionDefinition(
            name="GetAvailableSlots",
            parameters={
                "DateStart": {"type": "date", "required": True},
                "DateEnd": {"type": "date", "required": True},
                "ProvNum": {"type": "id"},
            },
            domain_id="dental",
        ),
        FunctionDefinition(
            name="CreateAppointment",
            parameters={
                "PatNum": {"type": "id", "required": True},
                "AptDateTime": {"type": "datetime", "required": True},
                "Note": {"type": "string"},
            },
            domain_id="dental",
        ),
    ] + builtin_virtual_functions("dental")
    return DomainConfig(
        domain=Domain(id="dental", api_endpoint="http://dental.test/functions", critical_operations=["Create"]),
        functions={fn.name: fn for fn in functions},
        entities={"last_name": EntityDefinition(name="last_name", validation_type="name", domain_id="dental")},
        triggers=[],
        validators=build_registry_validators(functions),
    )


def _intent(name: str = "find_patient") -> IntentOutput:
    return IntentOutput(intent=name, entities={"last_name": "Smith"}, confidence=0.9, original_query="Look up Smith")


def test_fallback_calls_functions_then_responds(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        try:
            selector = _DummySelector(
                [
                    {"action": "call", "function": "SearchPatients", "parameters": {"LName": "smith "}},
                    {"action": "respond", "message": "I found Smith, patient #42."},
                ]
            )
            client = _DummyDomainClient()
            executor = FallbackExecutor(
                selector,
                client,
                learner=PatternLearner(store),
                policy=ModelPolicy(model_name="fallback"),
                max_calls=3,
            )

            result = await executor.execute(_config(), _intent(), "Look up Smith", session_id="s1", today=date(2026, 10, 16))

            assert result.success is True
            assert result.message == "I found Smith, patient #42."
            assert result.function_sequence == ["SearchPatients"]
            assert client.calls == [{"function": "SearchPatients", "parameters": {"LName": "smith"}}]
            # The call result is fed back to the model before it responds.
            assert '"PatNum": 42' in selector.calls[1][-1]["content"]
            offered = selector.calls[0][0]["content"]
            assert "SearchPatients" in offered and "AskUser" not in offered

            observation = store.get_observation(fingerprint("dental", "find_patient", ["SearchPatients"]))
            assert observation.times_observed == 1
            assert observation.success_count == 1
            assert [event.event_type for event in store.list_events(session_id="s1")] == [
                "fallback_completed",
                "pattern_recorded",
            ]
        finally:
            store.close()

    asyncio.run(_run())


def test_fallback_feeds_back_invalid_calls_and_marks_the_run_unsuccessful(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        try:
            selector = _DummySelector(
                [
                    {"action": "call", "function": "DropDatabase", "parameters": {}},
                    {"action": "call", "function": "SearchPatients", "parameters": {}},
                    {"action": "call", "function": "SearchPatients", "parameters": {"LName": "Smith"}},
                    {"action": "respond", "message": "Found them."},
                ]
            )
            client = _DummyDomainClient()
            executor = FallbackExecutor(selector, client, learner=PatternLearner(store), policy=ModelPolicy(model_name="f"))

            result = await executor.execute(_config(), _intent(), "Look up Smith", session_id="s2")

            assert result.responded is True
            assert result.success is False
            assert result.function_sequence == ["SearchPatients"]
            assert len(client.calls) == 1
            assert "Unknown function 'DropDatabase'" in selector.calls[1][-1]["content"]
            assert "validation_errors" in selector.calls[2][-1]["content"]
            observation = store.get_observation(fingerprint("dental", "find_patient", ["SearchPatients"]))
            assert observation.success_count == 0
        finally:
            store.close()

    asyncio.run(_run())


def test_fallback_stops_at_the_call_budget() -> None:
    async def _run() -> None:
        call = {"action": "call", "function": "SearchPatients", "parameters": {"LName": "Smith"}}
        selector = _DummySelector([call, call, call, {"action": "respond", "message": "Done."}])
        client = _DummyDomainClient()
        executor = FallbackExecutor(selector, client, policy=ModelPolicy(model_name="f"), max_calls=2)

        result = await executor.execute(_config(), _intent(), "Look up Smith")

        assert len(client.calls) == 2
        assert result.responded is False
        assert result.success is False

    asyncio.run(_run())


def test_pattern_counting_is_atomic_under_concurrency(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        learner = PatternLearner(store, min_occurrences=5000)
        sequence = ["SearchPatients", "CreateAppointment"]

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda i: learner.record("dental", "book_appointment", sequence, i % 10 != 0), range(1000)))

        observation = store.get_observation(fingerprint("dental", "book_appointment", sequence))
        assert observation.times_observed == 1000
        assert observation.success_count == 900
        assert observation.status == "observed"
    finally:
        store.close()


def test_threshold_crossing_suggests_once(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        learner = PatternLearner(store, min_occurrences=3, min_success_rate=0.8)
        sequence = ["GetAvailableSlots", "CreateAppointment"]

        assert learner.record("dental", "book_slot", sequence, True).status == "observed"
        assert learner.record("dental", "book_slot", sequence, True).status == "observed"
        assert learner.record("dental", "book_slot", sequence, True).status == "suggested"
        assert learner.record("dental", "book_slot", sequence, True).status == "suggested"
        assert [obs.intent for obs in learner.list_suggestions("dental")] == ["book_slot"]

        learner.record("dental", "flaky", ["SearchPatients"], True)
        learner.record("dental", "flaky", ["SearchPatients"], False)
        assert learner.record("dental", "flaky", ["SearchPatients"], True).status == "observed"

        assert learner.record("dental", "book_slot", [], True) is None
    finally:
        store.close()


def test_fingerprint_depends_on_domain_intent_and_order() -> None:
    base = fingerprint("dental", "Book Slot", ["A", "B"])
    assert base == fingerprint("dental", "book_slot", ["A", "B"])
    assert base != fingerprint("dental", "book_slot", ["B", "A"])
    assert base != fingerprint("vet", "book_slot", ["A", "B"])
    assert snake_case("GetAvailableSlots") == "get_available_slots"
    assert snake_case("SearchHTTPLogs") == "search_http_logs"


def test_approved_pattern_becomes_a_promoted_plan(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        learner = PatternLearner(store, min_occurrences=1, min_success_rate=0.5)
        sequence = ["GetAvailableSlots", "CreateAppointment"]
        observation = learner.record("dental", "book_slot", sequence, True)

        plan = learner.approve(observation.fingerprint, config=_config())

        assert plan.provenance == "promoted"
        assert plan.intent_triggers == ["book_slot"]
        assert plan.function_sequence() == ["GetAvailableSlots", "ConfirmWithUser", "CreateAppointment"]
        slots, confirm, create = plan.steps
        assert slots.input_mapping == {"DateStart": "${todayISO}", "DateEnd": "${safeDateEnd}"}
        assert slots.output_as == "get_available_slots"
        assert confirm.wait_for_user.field == "confirm_create_appointment"
        assert create.input_mapping == {"PatNum": "PatNum", "AptDateTime": "AptDateTime"}

        _, new_fields = learner.build_plan(store.get_observation(observation.fingerprint), _config())
        assert new_fields == {"PatNum": ValidatorKind.ID, "AptDateTime": ValidatorKind.DATETIME}

        stored = store.get_observation(observation.fingerprint)
        assert stored.status == "approved"
        assert stored.promoted_plan_id == plan.id
        assert store.get_plan("dental", "book_slot").id == plan.id
        assert learner.approve(observation.fingerprint).id == plan.id
        assert len(store.list_events(event_type="pattern_promoted")) == 1
    finally:
        store.close()


def test_approving_unknown_fingerprint_raises(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        with pytest.raises(PatternNotFoundError):
            PatternLearner(store).approve("deadbeef", config=_config())
    finally:
        store.close()


def test_pattern_below_the_threshold_cannot_be_approved(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        learner = PatternLearner(store, min_occurrences=3, min_success_rate=0.8)
        observation = learner.record("dental", "book_slot", ["GetAvailableSlots", "CreateAppointment"], True)

        with pytest.raises(PatternNotSuggestedError) as exc_info:
            learner.approve(observation.fingerprint, config=_config())

        assert exc_info.value.status == "observed"
        assert store.get_plan("dental", "book_slot") is None
        assert store.get_observation(observation.fingerprint).status == "observed"
    finally:
        store.close()


def test_promoted_plan_failing_the_quality_gate_is_not_saved(tmp_path) -> None:
    store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
    try:
        config = _config()
        log_visit = FunctionDefinition(
            name="LogVisit",
            parameters={"Reason Code": {"type": "string", "required": True}},
            domain_id="dental",
        )
        config.functions[log_visit.name] = log_visit
        learner = PatternLearner(store, min_occurrences=1, min_success_rate=0.5)
        observation = learner.record("dental", "log_visit", ["LogVisit"], True)

        with pytest.raises(ConfigurationError) as exc_info:
            learner.approve(observation.fingerprint, config=config)

        assert "Reason Code" in str(exc_info.value)
        assert store.get_plan("dental", "log_visit") is None
        assert store.get_observation(observation.fingerprint).status == "suggested"
    finally:
        store.close()
