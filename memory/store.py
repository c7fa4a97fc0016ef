"""
Engine persistence store.

Design goals:
- Key-value semantics: sessions by id, plans by (domain, intent), observations by fingerprint
- Full-row replacement for plans (no partial plan ever visible)
- Atomic increment-or-insert for pattern counters
- Expired sessions read as absent
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from shared.errors import StateCorruptionError
from shared.models import normalize_intent_name
from shared.workflow_contracts import EngineEvent, PatternObservation, Plan, SessionState

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = float(os.getenv("SESSION_TTL_SECONDS", "1800"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EngineStore(ABC):
    """Persistence abstraction used by the resolver, engine and pattern learner."""

    # Sessions
    @abstractmethod
    def get_session(self, session_id: str) -> SessionState | None:
        """Return the live session, or None when absent or expired."""

    @abstractmethod
    def save_session(self, state: SessionState) -> None:
        """Persist the full session state."""

    @abstractmethod
    def delete_session(self, session_id: str) -> bool:
        """Remove a session. Returns True when a row existed."""

    # Plans
    @abstractmethod
    def get_plan(self, domain_id: str, intent: str) -> Plan | None:
        """Active plan serving (domain, intent)."""

    @abstractmethod
    def get_plan_by_id(self, plan_id: str) -> Plan | None:
        """Plan by id, active or not."""

    @abstractmethod
    def save_plan(self, plan: Plan) -> Plan:
        """Persist a plan and point each of its intents at it."""

    @abstractmethod
    def list_plans(self, domain_id: str) -> list[Plan]:
        """Active plans of a domain."""

    @abstractmethod
    def increment_plan_usage(self, plan_id: str) -> None:
        """Bump ``times_used`` for a plan."""

    # Pattern observations
    @abstractmethod
    def record_observation(
        self,
        fingerprint: str,
        domain_id: str,
        intent: str,
        function_sequence: list[str],
        success: bool,
    ) -> PatternObservation:
        """Atomically increment (or insert) counters for a fingerprint."""

    @abstractmethod
    def get_observation(self, fingerprint: str) -> PatternObservation | None:
        """Observation by fingerprint."""

    @abstractmethod
    def list_observations(self, domain_id: str | None = None, status: str | None = None) -> list[PatternObservation]:
        """Observations, optionally filtered."""

    @abstractmethod
    def mark_suggested(self, fingerprint: str) -> bool:
        """Move an ``observed`` fingerprint to ``suggested``. False when it already moved."""

    @abstractmethod
    def set_observation_status(self, fingerprint: str, status: str, promoted_plan_id: str | None = None) -> None:
        """Set status (and the promoted plan id on approval)."""

    # Events
    @abstractmethod
    def append_event(self, event: EngineEvent) -> None:
        """Persist an engine event."""

    @abstractmethod
    def list_events(self, session_id: str | None = None, event_type: str | None = None, limit: int = 200) -> list[EngineEvent]:
        """Events, oldest first."""

    def close(self) -> None:
        """Release resources."""


class SQLiteEngineStore(EngineStore):
    """SQLite-backed engine store with a persistent connection."""

    def __init__(self, db_path: str = "engine.db", session_ttl_seconds: float | None = None):
        self.db_path = db_path
        self.session_ttl_seconds = (
            DEFAULT_SESSION_TTL_SECONDS if session_ttl_seconds is None else float(session_ttl_seconds)
        )
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    domain_id TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS plans (
                    plan_id TEXT PRIMARY KEY,
                    domain_id TEXT NOT NULL,
                    provenance TEXT NOT NULL,
                    plan_json TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    times_used INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS plan_intents (
                    domain_id TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    PRIMARY KEY (domain_id, intent)
                );

                CREATE TABLE IF NOT EXISTS pattern_observations (
                    fingerprint TEXT PRIMARY KEY,
                    domain_id TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    sequence_json TEXT NOT NULL,
                    times_observed INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'observed',
                    promoted_plan_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS engine_events (
                    event_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    event_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_engine_events_session ON engine_events(session_id);
                CREATE INDEX IF NOT EXISTS idx_observations_domain ON pattern_observations(domain_id, status);
                """
            )
            self._conn.commit()

    # ─── Sessions ──────────────────────────────────────────────

    def get_session(self, session_id: str) -> SessionState | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT state_json FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            state = SessionState.model_validate_json(row["state_json"])
        except PydanticValidationError as exc:
            raise StateCorruptionError(f"Session '{session_id}' state is unreadable: {exc}") from exc
        if state.is_expired(self.session_ttl_seconds):
            logger.info("Session %s expired; discarding state", session_id)
            self.delete_session(session_id)
            return None
        return state

    def save_session(self, state: SessionState) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sessions (session_id, domain_id, state_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    domain_id = excluded.domain_id,
                    state_json = excluded.state_json,
                    updated_at = excluded.updated_at
                """,
                (state.session_id, state.domain_id, state.model_dump_json(), _now_iso()),
            )
            self._conn.commit()

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            self._conn.commit()
            return cursor.rowcount > 0

    # ─── Plans ─────────────────────────────────────────────────

    def _plan_from_row(self, row: sqlite3.Row) -> Plan:
        plan = Plan.model_validate_json(row["plan_json"])
        return plan.model_copy(update={"times_used": int(row["times_used"]), "is_active": bool(row["is_active"])})

    def get_plan(self, domain_id: str, intent: str) -> Plan | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT p.plan_json, p.times_used, p.is_active
                FROM plan_intents i
                JOIN plans p ON p.plan_id = i.plan_id
                WHERE i.domain_id = ? AND i.intent = ? AND p.is_active = 1
                """,
                (domain_id, normalize_intent_name(intent)),
            ).fetchone()
        return self._plan_from_row(row) if row else None

    def get_plan_by_id(self, plan_id: str) -> Plan | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT plan_json, times_used, is_active FROM plans WHERE plan_id = ?",
                (plan_id,),
            ).fetchone()
        return self._plan_from_row(row) if row else None

    def save_plan(self, plan: Plan) -> Plan:
        intents = [normalize_intent_name(item) for item in plan.intent_triggers if normalize_intent_name(item)]
        stored = plan.model_copy(update={"intent_triggers": intents, "updated_at": datetime.now(timezone.utc)})
        payload = stored.model_dump_json(exclude={"times_used", "is_active"})
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO plans (plan_id, domain_id, provenance, plan_json, is_active, times_used, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(plan_id) DO UPDATE SET
                    provenance = excluded.provenance,
                    plan_json = excluded.plan_json,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    stored.id,
                    stored.domain_id,
                    stored.provenance,
                    payload,
                    int(stored.is_active),
                    stored.times_used,
                    _now_iso(),
                ),
            )
            for intent in intents:
                self._conn.execute(
                    """
                    INSERT INTO plan_intents (domain_id, intent, plan_id)
                    VALUES (?, ?, ?)
                    ON CONFLICT(domain_id, intent) DO UPDATE SET plan_id = excluded.plan_id
                    """,
                    (stored.domain_id, intent, stored.id),
                )
        logger.info("Saved plan %s (%s) for %s: %s", stored.id, stored.provenance, stored.domain_id, intents)
        return stored

    def list_plans(self, domain_id: str) -> list[Plan]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT DISTINCT p.plan_id, p.plan_json, p.times_used, p.is_active, p.updated_at
                FROM plans p
                JOIN plan_intents i ON i.plan_id = p.plan_id
                WHERE p.domain_id = ? AND p.is_active = 1
                ORDER BY p.updated_at DESC
                """,
                (domain_id,),
            ).fetchall()
        return [self._plan_from_row(row) for row in rows]

    def increment_plan_usage(self, plan_id: str) -> None:
        with self._lock:
            self._conn.execute("UPDATE plans SET times_used = times_used + 1 WHERE plan_id = ?", (plan_id,))
            self._conn.commit()

    # ─── Pattern observations ──────────────────────────────────

    def _observation_from_row(self, row: sqlite3.Row) -> PatternObservation:
        return PatternObservation(
            fingerprint=row["fingerprint"],
            domain_id=row["domain_id"],
            intent=row["intent"],
            function_sequence=json.loads(row["sequence_json"]),
            times_observed=int(row["times_observed"]),
            success_count=int(row["success_count"]),
            status=row["status"],
            promoted_plan_id=row["promoted_plan_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def record_observation(
        self,
        fingerprint: str,
        domain_id: str,
        intent: str,
        function_sequence: list[str],
        success: bool,
    ) -> PatternObservation:
        now = _now_iso()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO pattern_observations
                    (fingerprint, domain_id, intent, sequence_json, times_observed, success_count, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, 'observed', ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    times_observed = times_observed + 1,
                    success_count = success_count + excluded.success_count,
                    updated_at = excluded.updated_at
                """,
                (
                    fingerprint,
                    domain_id,
                    intent,
                    json.dumps(list(function_sequence)),
                    1 if success else 0,
                    now,
                    now,
                ),
            )
            row = self._conn.execute(
                "SELECT * FROM pattern_observations WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        return self._observation_from_row(row)

    def get_observation(self, fingerprint: str) -> PatternObservation | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pattern_observations WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        return self._observation_from_row(row) if row else None

    def list_observations(self, domain_id: str | None = None, status: str | None = None) -> list[PatternObservation]:
        query = "SELECT * FROM pattern_observations WHERE 1 = 1"
        params: list[Any] = []
        if domain_id:
            query += " AND domain_id = ?"
            params.append(domain_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY times_observed DESC, fingerprint"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._observation_from_row(row) for row in rows]

    def mark_suggested(self, fingerprint: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE pattern_observations
                SET status = 'suggested', updated_at = ?
                WHERE fingerprint = ? AND status = 'observed'
                """,
                (_now_iso(), fingerprint),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def set_observation_status(self, fingerprint: str, status: str, promoted_plan_id: str | None = None) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE pattern_observations
                SET status = ?, promoted_plan_id = COALESCE(?, promoted_plan_id), updated_at = ?
                WHERE fingerprint = ?
                """,
                (status, promoted_plan_id, _now_iso(), fingerprint),
            )
            self._conn.commit()

    # ─── Events ────────────────────────────────────────────────

    def append_event(self, event: EngineEvent) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO engine_events (event_id, session_id, event_type, event_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.session_id,
                    event.event_type,
                    event.model_dump_json(),
                    event.timestamp.isoformat(),
                ),
            )
            self._conn.commit()

    def list_events(self, session_id: str | None = None, event_type: str | None = None, limit: int = 200) -> list[EngineEvent]:
        query = "SELECT event_json FROM engine_events WHERE 1 = 1"
        params: list[Any] = []
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY rowid ASC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [EngineEvent.model_validate_json(row["event_json"]) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
