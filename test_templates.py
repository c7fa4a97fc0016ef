from datetime import date, datetime

import pytest

from shared.errors import TemplateResolutionError
from shared.models import Domain
from shared.predicates import evaluate_predicate, predicate_field_names, validate_predicate
from shared.templates import (
    build_parameters,
    build_runtime_namespace,
    extract_plan_entities,
    looks_like_field_name,
    render_message,
    resolve_template,
)
from shared.workflow_contracts import Plan


def _runtime() -> dict[str, str]:
    return build_runtime_namespace(
        Domain(id="dental", api_endpoint="http://dental.test/functions"),
        today=date(2026, 10, 16),
        now=datetime(2026, 10, 16, 9, 30, 15),
        horizon_days=30,
    )


def test_runtime_namespace_is_seeded_from_today() -> None:
    runtime = _runtime()

    assert runtime["todayISO"] == "2026-10-16"
    assert runtime["tomorrowISO"] == "2026-10-17"
    assert runtime["safeDateEnd"] == "2026-11-15"
    assert runtime["nowISO"] == "2026-10-16T09:30:15"
    assert runtime["domainId"] == "dental"
    assert runtime["apiEndpoint"] == "http://dental.test/functions"


def test_build_parameters_resolves_templates_and_paths() -> None:
    data = {"patient": {"PatNum": 42}, "last_name": "Smith", "note": None}
    params = build_parameters(
        {
            "DateStart": "${todayISO}",
            "DateEnd": "${safeDateEnd}",
            "PatNum": "patient.PatNum",
            "LName": "last_name",
            "Note": "note",
            "Missing": "not_there",
        },
        data,
        _runtime(),
    )

    assert params == {"DateStart": "2026-10-16", "DateEnd": "2026-11-15", "PatNum": 42, "LName": "Smith"}


def test_template_values_never_leak_from_session_data() -> None:
    # A same-named data field must not shadow the reserved namespace.
    params = build_parameters({"DateStart": "${todayISO}"}, {"todayISO": "1999-01-01"}, _runtime())
    assert params["DateStart"] == "2026-10-16"


def test_unknown_template_name_raises() -> None:
    with pytest.raises(TemplateResolutionError) as exc_info:
        resolve_template("${nextMonth}", _runtime())
    assert exc_info.value.name == "nextMonth"
    assert "todayISO" in exc_info.value.available


def test_embedded_template_is_substituted_as_text() -> None:
    assert resolve_template("from ${todayISO} to ${tomorrowISO}", _runtime()) == "from 2026-10-16 to 2026-10-17"


def test_extract_plan_entities_skips_templates_reserved_names_and_literals() -> None:
    plan = Plan.model_validate(
        {
            "domainId": "dental",
            "name": "Book",
            "steps": [
                {
                    "function": "SearchPatients",
                    "inputMapping": {"LName": "last_name", "Birthdate": "birth_date"},
                    "outputAs": "patients",
                },
                {
                    "function": "GetAvailableSlots",
                    "inputMapping": {"DateStart": "${todayISO}", "DateEnd": "safeDateEnd"},
                },
                {
                    "function": "CreateAppointment",
                    "inputMapping": {"PatNum": "patients.0.PatNum", "Note": "first visit please"},
                    "skipIf": "already_booked",
                },
            ],
        }
    )

    assert extract_plan_entities(plan) == ["last_name", "birth_date", "patients", "already_booked"]


def test_field_name_heuristic() -> None:
    assert looks_like_field_name("patient.PatNum")
    assert not looks_like_field_name("first visit please")
    assert not looks_like_field_name("2026-10-16")
    assert not looks_like_field_name("x" * 51)


def test_render_message_interpolates_fields_and_templates() -> None:
    text = render_message(
        "Booked {patient.name} on {slot} (confirmed: {ok}) as of ${todayISO}{unknown}",
        {"patient": {"name": "Ann"}, "slot": "10:00", "ok": True},
        _runtime(),
    )
    assert text == "Booked Ann on 10:00 (confirmed: yes) as of 2026-10-16"


def test_predicates_evaluate_over_session_data() -> None:
    data = {"appointment": {"status": "booked"}, "count": 2, "flag": False}

    assert evaluate_predicate("appointment.status == 'booked'", data) is True
    assert evaluate_predicate("appointment.status == 'cancelled'", data) is False
    assert evaluate_predicate({"path": "appointment.status", "equals": "booked"}, data) is True
    assert evaluate_predicate({"path": "missing_field", "missing": True}, data) is True
    assert evaluate_predicate({"all": [{"path": "count", "exists": True}, {"not": {"path": "flag", "truthy": True}}]}, data)
    assert evaluate_predicate("count > 1 and not flag", data) is True
    assert evaluate_predicate("__import__('os')", data) is False
    assert predicate_field_names("count > 1 and len(items) == 0") == ["count", "items"]
    assert validate_predicate("open('x')") != []
    assert validate_predicate({"path": "count", "exists": True}) == []
