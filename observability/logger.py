"""
Observability Layer - Structured logging & timing.

Responsibility:
- Log engine events in a structured JSON format
- Time model and domain API calls
- Contextual logging (session_id, trace_id, domain_id)
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("observability")


class Observability:
    """Structured logger for engine events."""

    def __init__(self, session_id: str | None = None, domain_id: str | None = None):
        self.session_id = session_id or str(uuid.uuid4())
        self.domain_id = domain_id
        self.trace_id = str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Log a structured event."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "trace_id": self.trace_id,
            "domain_id": self.domain_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, default=str, ensure_ascii=False))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Context manager to measure execution time of an operation."""
        start_time = time.perf_counter()
        meta = metadata or {}
        success = True
        error = None
        try:
            yield
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
            )

    def span(self, session_id: str | None = None, domain_id: str | None = None) -> "Observability":
        """New logger sharing this trace, rebound to a session/domain."""
        obs = Observability(session_id or self.session_id, domain_id or self.domain_id)
        obs.trace_id = self.trace_id
        return obs
