"""
Engine lifecycle events.

Responsibility:
- Persist EngineEvent records through the engine store
- Mirror each event to the structured observability log
"""

import logging
from typing import Any

from memory.store import EngineStore
from observability.logger import Observability
from shared.workflow_contracts import EngineEvent

logger = logging.getLogger(__name__)


def record_engine_event(
    store: EngineStore,
    *,
    session_id: str,
    domain_id: str,
    event_type: str,
    plan_id: str | None = None,
    step_index: int | None = None,
    payload: dict[str, Any] | None = None,
    observability: Observability | None = None,
) -> EngineEvent | None:
    """Persist and log one event. Persistence failures are logged, never raised."""
    try:
        event = EngineEvent(
            session_id=session_id,
            domain_id=domain_id,
            event_type=event_type,  # type: ignore[arg-type]
            plan_id=plan_id,
            step_index=step_index,
            payload=payload or {},
        )
        store.append_event(event)
    except Exception as exc:
        logger.warning("Failed to persist engine event '%s': %s", event_type, exc)
        return None

    obs = observability or Observability(session_id=session_id, domain_id=domain_id)
    obs.log_event(
        event_type,
        {"plan_id": plan_id, "step_index": step_index, **(payload or {})},
    )
    return event
