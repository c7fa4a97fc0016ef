from __future__ import annotations

import asyncio
from datetime import datetime

from execution.engine import CANCELLED_MESSAGE, ExecutionEngine, assign_path
from memory.store import SQLiteEngineStore
from registry.loader import DomainConfig, builtin_virtual_functions
from registry.validators import build_registry_validators
from shared.models import Domain, DomainOutput, EntityDefinition, FunctionDefinition
from shared.workflow_contracts import Plan, SessionState

NOW = datetime(2026, 10, 16, 9, 0)

PATIENTS = [{"PatNum": 42, "LName": "Smith", "FName": "Ann"}, {"PatNum": 43, "LName": "Jones", "FName": "Bo"}]
SLOTS = [
    {"AptDateTime": "2026-10-20T09:00:00", "label": "Tue Oct 20, 9:00 AM"},
    {"AptDateTime": "2026-10-21T10:00:00", "label": "Wed Oct 21, 10:00 AM"},
]


class _DummyDomainClient:
    def __init__(self, responses: dict[str, DomainOutput] | None = None):
        self.responses = responses or {
            "SearchPatients": DomainOutput(success=True, data=PATIENTS),
            "GetAvailableSlots": DomainOutput(success=True, data=SLOTS),
            "CreateAppointment": DomainOutput(success=True, data={"AptNum": 7}),
        }
        self.calls: list[dict] = []

    async def call(self, domain, function, parameters, *, idempotent=False, session_id=None):
        self.calls.append({"function": function, "parameters": dict(parameters), "idempotent": idempotent})
        return self.responses[function]


def _config() -> DomainConfig:
    functions = [
        FunctionDefinition(
            name="SearchPatients",
            parameters={"LName": {"type": "name", "required": True}, "Birthdate": {"type": "past_date"}},
            domain_id="dental",
        ),
        FunctionDefinition(
            name="GetAvailableSlots",
            parameters={"DateStart": {"type": "date", "required": True}, "DateEnd": {"type": "date", "required": True}},
            domain_id="dental",
        ),
        FunctionDefinition(
            name="CreateAppointment",
            parameters={"PatNum": {"type": "id", "required": True}, "AptDateTime": {"type": "datetime", "required": True}},
            domain_id="dental",
        ),
    ] + builtin_virtual_functions("dental")
    entities = {
        "last_name": EntityDefinition(name="last_name", validation_type="name", domain_id="dental"),
        "birth_date": EntityDefinition(name="birth_date", validation_type="past_date", domain_id="dental"),
    }
    return DomainConfig(
        domain=Domain(id="dental", api_endpoint="http://dental.test/functions", critical_operations=["Create"]),
        functions={fn.name: fn for fn in functions},
        entities=entities,
        triggers=[],
        validators=build_registry_validators(functions),
    )


def _booking_plan() -> Plan:
    return Plan.model_validate(
        {
            "id": "plan-booking",
            "domainId": "dental",
            "name": "Book appointment",
            "intentTriggers": ["book_appointment"],
            "successMessage": "You're booked for {slot.AptDateTime}.",
            "steps": [
                {"function": "AskUser", "waitForUser": {"field": "last_name", "prompt": "What's the patient's last name?"}},
                {"function": "AskUser", "waitForUser": {"field": "birth_date", "prompt": "And the date of birth?"}},
                {
                    "function": "SearchPatients",
                    "inputMapping": {"LName": "last_name", "Birthdate": "birth_date"},
                    "outputAs": "patients",
                },
                {
                    "function": "ExtractEntityId",
                    "inputMapping": {"items": "patients", "LName": "last_name"},
                    "outputAs": "patient_id",
                    "errorMessage": "I couldn't find that patient.",
                },
                {
                    "function": "GetAvailableSlots",
                    "inputMapping": {"DateStart": "${todayISO}", "DateEnd": "${safeDateEnd}"},
                    "outputAs": "slots",
                },
                {
                    "function": "PresentOptions",
                    "inputMapping": {"options": "slots"},
                    "waitForUser": {"field": "slot", "prompt": "Here are the next open times:"},
                },
                {
                    "function": "ConfirmWithUser",
                    "waitForUser": {"field": "booking_confirmed", "prompt": "Book {last_name} on {slot.AptDateTime}?"},
                },
                {
                    "function": "CreateAppointment",
                    "inputMapping": {"PatNum": "patient_id", "AptDateTime": "slot.AptDateTime"},
                    "outputAs": "appointment",
                },
            ],
        }
    )


def _engine(store, client) -> ExecutionEngine:
    return ExecutionEngine(store, client, step_timeout_seconds=5, safe_date_horizon_days=30)


def _session(session_id: str = "s1") -> SessionState:
    return SessionState(session_id=session_id, domain_id="dental")


def test_booking_flow_pauses_and_resumes_to_completion(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        engine = _engine(store, client)
        config = _config()
        plan = _booking_plan()
        try:
            result = await engine.start(plan, _session(), config, {}, now=NOW)
            assert result.status == "waiting_user"
            assert result.message == "What's the patient's last name?"
            assert result.session.step_index == 0
            assert result.session.pending_field == "last_name"
            assert store.get_session("s1").waiting_for_user is True

            result = await engine.resume(store.get_session("s1"), plan, config, "Smith")
            assert result.status == "waiting_user"
            assert result.session.step_index == 1
            assert result.session.data["last_name"] == "Smith"

            result = await engine.resume(store.get_session("s1"), plan, config, "May 17, 1980")
            assert result.status == "waiting_user"
            assert result.session.step_index == 5
            assert result.session.pending_kind == "select"
            assert result.message == (
                "Here are the next open times:\n1. Tue Oct 20, 9:00 AM\n2. Wed Oct 21, 10:00 AM"
            )
            assert [call["function"] for call in client.calls] == ["SearchPatients", "GetAvailableSlots"]
            assert client.calls[0]["parameters"] == {"LName": "Smith", "Birthdate": "1980-05-17"}
            assert client.calls[1]["parameters"] == {"DateStart": "2026-10-16", "DateEnd": "2026-11-15"}
            assert result.session.data["patient_id"] == 42

            result = await engine.resume(store.get_session("s1"), plan, config, "the second one")
            assert result.status == "waiting_user"
            assert result.session.pending_kind == "confirm"
            assert result.message == "Book Smith on 2026-10-21T10:00:00?"

            result = await engine.resume(store.get_session("s1"), plan, config, "yes please")
            assert result.status == "completed"
            assert result.terminal is True
            assert result.message == "You're booked for 2026-10-21T10:00:00."
            assert client.calls[-1] == {
                "function": "CreateAppointment",
                "parameters": {"PatNum": 42, "AptDateTime": "2026-10-21T10:00:00"},
                "idempotent": False,
            }
            assert client.calls[0]["idempotent"] is True

            final = store.get_session("s1")
            assert final.status == "completed"
            assert final.data["appointment"] == {"AptNum": 7}
            event_types = [event.event_type for event in store.list_events(session_id="s1", limit=500)]
            assert event_types[0] == "plan_started"
            assert event_types.count("plan_paused") == 4
            assert event_types.count("plan_resumed") == 4
            assert event_types[-1] == "plan_completed"
        finally:
            store.close()

    asyncio.run(_run())


def test_entities_from_the_utterance_skip_their_questions(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        try:
            engine = _engine(store, _DummyDomainClient())
            result = await engine.start(
                _booking_plan(),
                _session(),
                _config(),
                {"last_name": "Smith", "birth_date": "1980-05-17", "todayISO": "1999-01-01"},
                now=NOW,
            )

            assert result.session.step_index == 5
            assert result.session.data["todayISO"] == "2026-10-16"
        finally:
            store.close()

    asyncio.run(_run())


def test_unparseable_answer_keeps_the_same_step(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        try:
            engine = _engine(store, _DummyDomainClient())
            plan = _booking_plan()
            config = _config()
            await engine.start(plan, _session(), config, {"last_name": "Smith", "birth_date": "1980-05-17"}, now=NOW)

            result = await engine.resume(store.get_session("s1"), plan, config, "purple")

            assert result.status == "waiting_user"
            assert result.error_type == "invalid_answer"
            assert result.session.step_index == 5
            assert result.session.pending_field == "slot"
            assert result.message.startswith("Please pick one of the options by number:")

            result = await engine.resume(store.get_session("s1"), plan, config, "tomorrow")
            assert result.session.step_index == 5
        finally:
            store.close()

    asyncio.run(_run())


def test_declined_confirmation_cancels_without_calling_the_api(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        try:
            engine = _engine(store, client)
            plan = _booking_plan()
            config = _config()
            await engine.start(plan, _session(), config, {"last_name": "Smith", "birth_date": "1980-05-17"}, now=NOW)
            await engine.resume(store.get_session("s1"), plan, config, "1")

            result = await engine.resume(store.get_session("s1"), plan, config, "no, not that one")

            assert result.status == "failed"
            assert result.error_type == "cancelled"
            assert result.message == CANCELLED_MESSAGE
            assert "CreateAppointment" not in [call["function"] for call in client.calls]
        finally:
            store.close()

    asyncio.run(_run())


def test_invalid_parameters_pause_for_revalidation_without_api_calls(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        plan = Plan.model_validate(
            {
                "id": "plan-slots",
                "domainId": "dental",
                "name": "Show slots",
                "successMessage": "Found {slots.0.label}.",
                "steps": [
                    {
                        "function": "GetAvailableSlots",
                        "inputMapping": {"DateStart": "start_date", "DateEnd": "${safeDateEnd}"},
                        "outputAs": "slots",
                    }
                ],
            }
        )
        try:
            engine = _engine(store, client)
            result = await engine.start(plan, _session(), _config(), {"start_date": "whenever"}, now=NOW)

            assert result.status == "waiting_user"
            assert result.error_type == "validation_error"
            assert result.session.pending_kind == "revalidate"
            assert result.session.pending_field == "start_date"
            assert "start date" in result.message
            assert "start_date" not in result.session.data
            assert client.calls == []
            failed = store.list_events(session_id="s1", event_type="step_failed")
            assert failed[0].payload["error_type"] == "validation_error"

            result = await engine.resume(store.get_session("s1"), plan, _config(), "tomorrow")

            assert result.status == "completed"
            assert result.message == "Found Tue Oct 20, 9:00 AM."
            assert client.calls[0]["parameters"] == {"DateStart": "2026-10-17", "DateEnd": "2026-11-15"}
        finally:
            store.close()

    asyncio.run(_run())


def test_same_state_and_responses_produce_the_same_result(tmp_path) -> None:
    async def _run() -> tuple:
        outcomes = []
        for name in ("a", "b"):
            store = SQLiteEngineStore(db_path=str(tmp_path / f"{name}.db"))
            try:
                engine = _engine(store, _DummyDomainClient())
                plan = _booking_plan()
                config = _config()
                await engine.start(plan, _session(), config, {"last_name": "Smith", "birth_date": "1980-05-17"}, now=NOW)
                await engine.resume(store.get_session("s1"), plan, config, "2")
                result = await engine.resume(store.get_session("s1"), plan, config, "yes")
                outcomes.append((result.status, result.message, result.session.data, result.session.step_index))
            finally:
                store.close()
        return tuple(outcomes)

    first, second = asyncio.run(_run())
    assert first == second


def test_domain_failure_uses_the_step_error_message(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        client.responses["SearchPatients"] = DomainOutput(success=True, data=[])
        try:
            engine = _engine(store, client)
            result = await engine.start(
                _booking_plan(), _session(), _config(), {"last_name": "Smith", "birth_date": "1980-05-17"}, now=NOW
            )

            assert result.status == "failed"
            assert result.error_type == "entity_not_found"
            assert result.message == "I couldn't find that patient."
            assert store.get_session("s1").status == "failed"
        finally:
            store.close()

    asyncio.run(_run())


def test_skip_if_advances_past_the_step(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        plan = Plan.model_validate(
            {
                "domainId": "dental",
                "name": "Lookup",
                "successMessage": "Done.",
                "steps": [
                    {
                        "function": "SearchPatients",
                        "inputMapping": {"LName": "last_name"},
                        "outputAs": "patients",
                        "skipIf": {"path": "patient_id", "exists": True},
                    }
                ],
            }
        )
        try:
            result = await _engine(store, client).start(
                plan, _session(), _config(), {"last_name": "Smith", "patient_id": 42}, now=NOW
            )

            assert result.status == "completed"
            assert client.calls == []
            assert [event.event_type for event in store.list_events(event_type="step_skipped")] == ["step_skipped"]
        finally:
            store.close()

    asyncio.run(_run())


def test_assign_path_creates_nested_objects() -> None:
    data: dict = {"patient": "not a dict"}
    assign_path(data, "patient.contact.phone", "5551234567")
    assert data == {"patient": {"contact": {"phone": "5551234567"}}}


def test_invalid_template_parameter_fails_instead_of_asking(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        plan = Plan.model_validate(
            {
                "id": "plan-lookup",
                "domainId": "dental",
                "name": "Lookup",
                "steps": [
                    {
                        "function": "SearchPatients",
                        "inputMapping": {"LName": "last_name", "Birthdate": "${tomorrowISO}"},
                        "outputAs": "patients",
                        "errorMessage": "That lookup isn't set up correctly.",
                    }
                ],
            }
        )
        try:
            result = await _engine(store, client).start(plan, _session(), _config(), {"last_name": "Smith"}, now=NOW)

            assert result.status == "failed"
            assert result.error_type == "configuration_error"
            assert result.message == "That lookup isn't set up correctly."
            assert result.session.waiting_for_user is False
            assert client.calls == []
        finally:
            store.close()

    asyncio.run(_run())


def test_unmapped_required_parameter_is_asked_and_used(tmp_path) -> None:
    async def _run() -> None:
        store = SQLiteEngineStore(db_path=str(tmp_path / "engine.db"))
        client = _DummyDomainClient()
        plan = Plan.model_validate(
            {
                "id": "plan-slots",
                "domainId": "dental",
                "name": "Show slots",
                "successMessage": "Found {slots.0.label}.",
                "steps": [
                    {
                        "function": "GetAvailableSlots",
                        "inputMapping": {"DateEnd": "${safeDateEnd}"},
                        "outputAs": "slots",
                    }
                ],
            }
        )
        try:
            engine = _engine(store, client)
            result = await engine.start(plan, _session(), _config(), {}, now=NOW)

            assert result.session.pending_kind == "revalidate"
            assert result.session.pending_field == "DateStart"

            result = await engine.resume(store.get_session("s1"), plan, _config(), "tomorrow")

            assert result.status == "completed"
            assert client.calls[0]["parameters"]["DateStart"] == "2026-10-17"
        finally:
            store.close()

    asyncio.run(_run())
