import asyncio
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from main import bootstrap_configuration, build_pipeline
from registry.loader import read_bootstrap_payload

EXAMPLE_BOOTSTRAP = Path(__file__).parent / "domains.example.json"


def _unexpected(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, json={"error": f"unexpected call to {request.url}"})


@pytest.fixture
def pipeline(tmp_path):
    built = build_pipeline(
        engine_db_path=str(tmp_path / "engine.db"),
        registry_db_path=str(tmp_path / "registry.db"),
        conversation_db_path=str(tmp_path / "conversations.db"),
        model_transport=httpx.MockTransport(_unexpected),
        domain_transport=httpx.MockTransport(_unexpected),
    )
    bootstrap_configuration(
        built.config_loader,
        built.store,
        read_bootstrap_payload(file_path=str(EXAMPLE_BOOTSTRAP)),
    )
    yield built
    asyncio.run(built.aclose())


def test_health(pipeline):
    with TestClient(create_app(pipeline)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_post_turn_starts_configured_plan(pipeline):
    with TestClient(create_app(pipeline)) as client:
        response = client.post(
            "/v1/turns",
            json={"session_id": "h1", "domain_id": "dental", "utterance": "Can I book a visit?"},
        )
        missing = client.post(
            "/v1/turns",
            json={"session_id": "h2", "domain_id": "vet", "utterance": "book"},
        )
        invalid = client.post("/v1/turns", json={"session_id": "", "domain_id": "dental", "utterance": "hi"})

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "Sure! What's the patient's last name?"
    assert body["terminal"] is False
    assert body["session_state"]["waiting_for_user"] is True
    assert body["metadata"]["intent"] == "book_appointment"
    assert missing.status_code == 404
    assert invalid.status_code == 422


def test_list_plans_and_patterns(pipeline):
    with TestClient(create_app(pipeline)) as client:
        plans = client.get("/v1/domains/dental/plans")
        patterns = client.get("/v1/domains/dental/patterns")
        unknown = client.get("/v1/domains/vet/plans")

    assert plans.status_code == 200
    [plan] = plans.json()["plans"]
    assert plan["intentTriggers"] == ["book_appointment"]
    assert plan["provenance"] == "configured"
    assert patterns.json() == {"domain_id": "dental", "patterns": []}
    assert unknown.status_code == 404


def test_approve_pattern(pipeline):
    observation = pipeline.learner.record("dental", "find_patient", ["SearchPatients"], True)

    with TestClient(create_app(pipeline)) as client:
        premature = client.post(f"/v1/patterns/{observation.fingerprint}/approve")
        for _ in range(pipeline.learner.min_occurrences - 1):
            pipeline.learner.record("dental", "find_patient", ["SearchPatients"], True)
        approved = client.post(f"/v1/patterns/{observation.fingerprint}/approve")
        listed = client.get("/v1/domains/dental/patterns", params={"status": "approved"})
        missing = client.post("/v1/patterns/deadbeef/approve")

    assert premature.status_code == 409
    assert approved.status_code == 200
    plan = approved.json()["plan"]
    assert plan["provenance"] == "promoted"
    assert plan["intentTriggers"] == ["find_patient"]
    assert [item["fingerprint"] for item in listed.json()["patterns"]] == [observation.fingerprint]
    assert listed.json()["patterns"][0]["success_rate"] == 1.0
    assert missing.status_code == 404


def test_delete_session(pipeline):
    with TestClient(create_app(pipeline)) as client:
        client.post("/v1/turns", json={"session_id": "h1", "domain_id": "dental", "utterance": "book"})
        first = client.delete("/v1/sessions/h1")
        second = client.delete("/v1/sessions/h1")

    assert first.json() == {"session_id": "h1", "deleted": True}
    assert second.json() == {"session_id": "h1", "deleted": False}
