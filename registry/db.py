"""
Registry Database - SQLite storage for domain configuration.

Responsibility:
- Store Domain records (persona, API endpoint, business rules, critical operations)
- Store FunctionDefinitions, EntityDefinitions and TriggerPhrases per domain
- Persist configuration across restarts
"""

import json
import logging
import sqlite3
from typing import Any, Optional

logger = logging.getLogger(__name__)

DB_PATH = "registry.db"


class RegistryDB:
    """SQLite-backed registry for domain configuration data."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS domains (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    config TEXT NOT NULL, -- JSON: persona, endpoint, rules, critical ops
                    enabled BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS functions (
                    domain_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    parameters TEXT NOT NULL DEFAULT '{}', -- JSON
                    is_virtual BOOLEAN DEFAULT 0,
                    idempotent BOOLEAN, -- NULL: derive from critical operations
                    additional_parameters BOOLEAN DEFAULT 0,
                    PRIMARY KEY (domain_id, name),
                    FOREIGN KEY(domain_id) REFERENCES domains(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS entities (
                    domain_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    validation_type TEXT NOT NULL DEFAULT 'string',
                    extraction_hint TEXT DEFAULT '',
                    PRIMARY KEY (domain_id, name),
                    FOREIGN KEY(domain_id) REFERENCES domains(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS triggers (
                    domain_id TEXT NOT NULL,
                    phrase TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (domain_id, phrase),
                    FOREIGN KEY(domain_id) REFERENCES domains(id) ON DELETE CASCADE
                );
            """)

    def register_domain(self, domain_id: str, display_name: str, config: dict[str, Any]) -> str:
        """Register or update a domain."""
        config_json = json.dumps(config, ensure_ascii=False)
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO domains (id, display_name, config, enabled)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(id) DO UPDATE SET
                    display_name = excluded.display_name,
                    config = excluded.config,
                    enabled = 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (domain_id, display_name, config_json),
            )
        logger.info("Registered domain: %s", domain_id)
        return domain_id

    def _require_domain(self, conn: sqlite3.Connection, domain_id: str) -> None:
        if not conn.execute("SELECT 1 FROM domains WHERE id = ?", (domain_id,)).fetchone():
            raise ValueError(f"Domain not found: {domain_id}")

    def register_function(
        self,
        domain_id: str,
        name: str,
        description: str = "",
        parameters: dict[str, Any] | None = None,
        is_virtual: bool = False,
        idempotent: bool | None = None,
        additional_parameters: bool = False,
    ) -> None:
        """Register a function for a domain."""
        with self._get_conn() as conn:
            self._require_domain(conn, domain_id)
            conn.execute(
                """
                INSERT INTO functions (domain_id, name, description, parameters, is_virtual, idempotent, additional_parameters)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(domain_id, name) DO UPDATE SET
                    description = excluded.description,
                    parameters = excluded.parameters,
                    is_virtual = excluded.is_virtual,
                    idempotent = excluded.idempotent,
                    additional_parameters = excluded.additional_parameters
                """,
                (
                    domain_id,
                    name,
                    description,
                    json.dumps(parameters or {}, ensure_ascii=False),
                    int(bool(is_virtual)),
                    None if idempotent is None else int(bool(idempotent)),
                    int(bool(additional_parameters)),
                ),
            )
        logger.info("Registered function: %s -> %s", domain_id, name)

    def register_entity(
        self,
        domain_id: str,
        name: str,
        validation_type: str = "string",
        extraction_hint: str = "",
        *,
        replace: bool = True,
    ) -> bool:
        """Register an entity. With ``replace=False`` an existing row is left untouched.

        Returns True when a row was written.
        """
        with self._get_conn() as conn:
            self._require_domain(conn, domain_id)
            if replace:
                cursor = conn.execute(
                    """
                    INSERT INTO entities (domain_id, name, validation_type, extraction_hint)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(domain_id, name) DO UPDATE SET
                        validation_type = excluded.validation_type,
                        extraction_hint = excluded.extraction_hint
                    """,
                    (domain_id, name, validation_type, extraction_hint),
                )
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO entities (domain_id, name, validation_type, extraction_hint)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(domain_id, name) DO NOTHING
                    """,
                    (domain_id, name, validation_type, extraction_hint),
                )
            return cursor.rowcount > 0

    def register_trigger(self, domain_id: str, phrase: str, intent: str) -> None:
        """Register a trigger phrase. New phrases are appended to the domain's match order."""
        with self._get_conn() as conn:
            self._require_domain(conn, domain_id)
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 AS next_pos FROM triggers WHERE domain_id = ?",
                (domain_id,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO triggers (domain_id, phrase, intent, position)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(domain_id, phrase) DO UPDATE SET intent = excluded.intent
                """,
                (domain_id, phrase, intent, row["next_pos"]),
            )

    def get_domain(self, domain_id: str) -> Optional[dict[str, Any]]:
        """Get an enabled domain by id."""
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM domains WHERE id = ? AND enabled = 1", (domain_id,)).fetchone()
            if row:
                item = dict(row)
                item["config"] = json.loads(item.get("config") or "{}")
                return item
        return None

    def list_domains(self) -> list[dict[str, Any]]:
        """List all enabled domains."""
        with self._get_conn() as conn:
            rows = conn.execute("SELECT id, display_name FROM domains WHERE enabled = 1 ORDER BY id").fetchall()
            return [dict(r) for r in rows]

    def list_functions(self, domain_id: str) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM functions WHERE domain_id = ? ORDER BY name", (domain_id,)
            ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["parameters"] = json.loads(item.get("parameters") or "{}")
            item["is_virtual"] = bool(item["is_virtual"])
            item["additional_parameters"] = bool(item["additional_parameters"])
            if item["idempotent"] is not None:
                item["idempotent"] = bool(item["idempotent"])
            items.append(item)
        return items

    def list_entities(self, domain_id: str) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE domain_id = ? ORDER BY name", (domain_id,)
            ).fetchall()
            return [dict(r) for r in rows]

    def list_triggers(self, domain_id: str) -> list[dict[str, Any]]:
        """Trigger phrases in configuration order."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM triggers WHERE domain_id = ? ORDER BY position", (domain_id,)
            ).fetchall()
            return [dict(r) for r in rows]
