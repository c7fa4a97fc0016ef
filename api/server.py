"""
HTTP API for the workflow engine.

Endpoints:
- POST /v1/turns - the inbound turn interface
- GET /v1/domains/{domain_id}/plans - cached plans
- GET /v1/domains/{domain_id}/patterns - pattern observations (filter by status)
- POST /v1/patterns/{fingerprint}/approve - promote a suggestion to a plan (409 until suggested)
- DELETE /v1/sessions/{session_id} - drop a session
- GET /health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from main import Pipeline, build_pipeline
from shared.errors import (
    ConfigurationError,
    DomainNotFoundError,
    EngineError,
    PatternNotFoundError,
    PatternNotSuggestedError,
)
from shared.models import EntryRequest

logger = logging.getLogger(__name__)


class TurnRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    domain_id: str = Field(..., min_length=1)
    utterance: str
    metadata: dict[str, Any] = Field(default_factory=dict)


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """Build the app. A pre-built pipeline is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        owned = pipeline is None
        _app.state.pipeline = pipeline or build_pipeline()
        yield
        if owned:
            await _app.state.pipeline.aclose()

    app = FastAPI(title="Intent Workflow Engine API", version="0.1.0", lifespan=lifespan)

    def _pipeline() -> Pipeline:
        return app.state.pipeline

    def _require_domain(domain_id: str) -> None:
        try:
            _pipeline().config_loader.load(domain_id)
        except DomainNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/turns")
    async def post_turn(request: TurnRequest) -> dict[str, Any]:
        entry = EntryRequest(
            session_id=request.session_id,
            domain_id=request.domain_id,
            input_text=request.utterance,
            metadata={"source": "http", **request.metadata},
        )
        try:
            response = await _pipeline().orchestrator.handle_turn(entry)
        except DomainNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except EngineError as exc:
            logger.exception("Turn failed for session %s", request.session_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return response.model_dump(mode="json")

    @app.get("/v1/domains/{domain_id}/plans")
    def list_plans(domain_id: str) -> dict[str, Any]:
        _require_domain(domain_id)
        plans = _pipeline().store.list_plans(domain_id)
        return {"domain_id": domain_id, "plans": [plan.model_dump(mode="json", by_alias=True) for plan in plans]}

    @app.get("/v1/domains/{domain_id}/patterns")
    def list_patterns(domain_id: str, status: str | None = Query(default=None)) -> dict[str, Any]:
        _require_domain(domain_id)
        observations = _pipeline().store.list_observations(domain_id=domain_id, status=status)
        return {
            "domain_id": domain_id,
            "patterns": [
                {**obs.model_dump(mode="json"), "success_rate": round(obs.success_rate, 4)} for obs in observations
            ],
        }

    @app.post("/v1/patterns/{fingerprint}/approve")
    def approve_pattern(fingerprint: str) -> dict[str, Any]:
        try:
            plan = _pipeline().learner.approve(fingerprint)
        except (PatternNotFoundError, DomainNotFoundError) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except PatternNotSuggestedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"plan": plan.model_dump(mode="json", by_alias=True)}

    @app.delete("/v1/sessions/{session_id}")
    def delete_session(session_id: str) -> dict[str, Any]:
        deleted = _pipeline().store.delete_session(session_id)
        return {"session_id": session_id, "deleted": deleted}

    return app


app = create_app()
