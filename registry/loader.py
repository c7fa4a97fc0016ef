"""
Domain Configuration Loader - Builds runtime domain bundles from RegistryDB.

Responsibility:
- Read one domain's functions, entities and trigger phrases
- Compile per-function validators once per load
- Cache bundles with a short TTL
- Seed configuration from a bootstrap JSON document
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import ValidationError as PydanticValidationError

from registry.db import RegistryDB
from registry.validators import FunctionValidator, build_registry_validators
from shared.errors import ConfigurationError, DomainNotFoundError
from shared.models import (
    Domain,
    EntityDefinition,
    FunctionDefinition,
    ParameterSpec,
    TriggerPhrase,
    ValidatorKind,
)
from shared.workflow_contracts import (
    VIRTUAL_ASK_USER,
    VIRTUAL_CONFIRM,
    VIRTUAL_EXTRACT_ENTITY_ID,
    VIRTUAL_PRESENT_OPTIONS,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = float(os.getenv("DOMAIN_CONFIG_TTL_SECONDS", "60"))


def builtin_virtual_functions(domain_id: str) -> list[FunctionDefinition]:
    """In-process functions every domain gets."""
    text = ParameterSpec(type=ValidatorKind.STRING)
    return [
        FunctionDefinition(
            name=VIRTUAL_ASK_USER,
            description="Ask the user for a missing value and wait for the answer.",
            parameters={"prompt": text},
            is_virtual=True,
            domain_id=domain_id,
            idempotent=True,
            additional_parameters=True,
        ),
        FunctionDefinition(
            name=VIRTUAL_CONFIRM,
            description="Summarize the pending operation and wait for a yes/no answer.",
            parameters={"summary": text},
            is_virtual=True,
            domain_id=domain_id,
            idempotent=True,
            additional_parameters=True,
        ),
        FunctionDefinition(
            name=VIRTUAL_PRESENT_OPTIONS,
            description="Show a numbered list from a previous step's output and wait for a selection.",
            parameters={
                "options": ParameterSpec(type=ValidatorKind.ARRAY, required=True),
                "labelKey": text,
            },
            is_virtual=True,
            domain_id=domain_id,
            idempotent=True,
        ),
        FunctionDefinition(
            name=VIRTUAL_EXTRACT_ENTITY_ID,
            description="Pick the identifier of the item in a list that matches the given criteria.",
            parameters={"items": ParameterSpec(type=ValidatorKind.ARRAY, required=True)},
            is_virtual=True,
            domain_id=domain_id,
            idempotent=True,
            additional_parameters=True,
        ),
    ]


@dataclass
class DomainConfig:
    """Everything the engine needs about one domain, loaded together."""

    domain: Domain
    functions: dict[str, FunctionDefinition]
    entities: dict[str, EntityDefinition]
    triggers: list[TriggerPhrase]
    validators: dict[str, FunctionValidator]
    loaded_at: float = field(default_factory=time.monotonic)

    @property
    def domain_id(self) -> str:
        return self.domain.id

    def function(self, name: str) -> FunctionDefinition | None:
        return self.functions.get(name)

    def external_functions(self) -> list[FunctionDefinition]:
        return [fn for fn in self.functions.values() if not fn.is_virtual]

    def is_idempotent(self, function_name: str) -> bool:
        fn = self.functions.get(function_name)
        if fn is not None and fn.idempotent is not None:
            return fn.idempotent
        return not self.domain.is_critical(function_name)

    def entity_kind(self, name: str) -> ValidatorKind | None:
        entity = self.entities.get(name)
        return entity.validation_type if entity else None

    def known_intents(self) -> list[str]:
        seen: list[str] = []
        for trigger in self.triggers:
            if trigger.intent not in seen:
                seen.append(trigger.intent)
        return seen


class DomainConfigLoader:
    """Loads DomainConfig bundles from RegistryDB with a TTL cache."""

    def __init__(
        self,
        db: RegistryDB,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.ttl_seconds = DEFAULT_TTL_SECONDS if ttl_seconds is None else float(ttl_seconds)
        self._clock = clock
        self._cache: dict[str, DomainConfig] = {}
        self._lock = threading.Lock()

    def load(self, domain_id: str) -> DomainConfig:
        with self._lock:
            cached = self._cache.get(domain_id)
            if cached is not None and (self._clock() - cached.loaded_at) < self.ttl_seconds:
                return cached

        config = self._load_from_db(domain_id)
        with self._lock:
            self._cache[domain_id] = config
        return config

    def invalidate(self, domain_id: str | None = None) -> None:
        with self._lock:
            if domain_id is None:
                self._cache.clear()
            else:
                self._cache.pop(domain_id, None)

    def _load_from_db(self, domain_id: str) -> DomainConfig:
        row = self.db.get_domain(domain_id)
        if not row:
            raise DomainNotFoundError(domain_id)
        config = row.get("config") or {}

        try:
            domain = Domain(id=row["id"], display_name=row.get("display_name") or "", **config)
            functions = {
                item["name"]: FunctionDefinition(
                    name=item["name"],
                    description=item.get("description") or "",
                    parameters=item.get("parameters") or {},
                    is_virtual=item.get("is_virtual", False),
                    domain_id=domain_id,
                    idempotent=item.get("idempotent"),
                    additional_parameters=item.get("additional_parameters", False),
                )
                for item in self.db.list_functions(domain_id)
            }
            entities = {
                item["name"]: EntityDefinition(
                    name=item["name"],
                    validation_type=item.get("validation_type") or "string",
                    extraction_hint=item.get("extraction_hint") or "",
                    domain_id=domain_id,
                )
                for item in self.db.list_entities(domain_id)
            }
        except PydanticValidationError as exc:
            raise ConfigurationError(f"Invalid configuration for domain '{domain_id}': {exc}") from exc

        for builtin in builtin_virtual_functions(domain_id):
            functions.setdefault(builtin.name, builtin)

        triggers = [
            TriggerPhrase(phrase=item["phrase"], intent=item["intent"], domain_id=domain_id)
            for item in self.db.list_triggers(domain_id)
        ]
        logger.info(
            "Loaded domain '%s': %d functions, %d entities, %d triggers",
            domain_id,
            len(functions),
            len(entities),
            len(triggers),
        )
        return DomainConfig(
            domain=domain,
            functions=functions,
            entities=entities,
            triggers=triggers,
            validators=build_registry_validators(functions.values()),
            loaded_at=self._clock(),
        )

    def bootstrap(self, payload: dict[str, Any] | list[dict[str, Any]]) -> list[str]:
        """Upsert domain definitions from a bootstrap document. Returns the domain ids written."""
        items = payload.get("domains", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ConfigurationError("Bootstrap payload must contain a 'domains' list")

        written: list[str] = []
        for raw in items:
            if not isinstance(raw, dict) or not str(raw.get("id", "")).strip():
                raise ConfigurationError("Every bootstrap domain needs an 'id'")
            domain_id = str(raw["id"]).strip()
            try:
                domain = Domain(
                    **{k: v for k, v in raw.items() if k not in ("functions", "entities", "triggers")}
                )
                functions = [FunctionDefinition(domain_id=domain_id, **fn) for fn in raw.get("functions", [])]
                entities = [EntityDefinition(domain_id=domain_id, **ent) for ent in raw.get("entities", [])]
                triggers = [TriggerPhrase(domain_id=domain_id, **trg) for trg in raw.get("triggers", [])]
            except PydanticValidationError as exc:
                raise ConfigurationError(f"Invalid bootstrap definition for domain '{domain_id}': {exc}") from exc

            self.db.register_domain(
                domain.id,
                domain.display_name,
                domain.model_dump(exclude={"id", "display_name"}),
            )
            for fn in functions:
                self.db.register_function(
                    domain_id,
                    fn.name,
                    description=fn.description,
                    parameters={name: spec.model_dump(mode="json") for name, spec in fn.parameters.items()},
                    is_virtual=fn.is_virtual,
                    idempotent=fn.idempotent,
                    additional_parameters=fn.additional_parameters,
                )
            for entity in entities:
                self.db.register_entity(
                    domain_id,
                    entity.name,
                    validation_type=entity.validation_type.value,
                    extraction_hint=entity.extraction_hint,
                )
            for trigger in triggers:
                self.db.register_trigger(domain_id, trigger.phrase, trigger.intent)
            self.invalidate(domain_id)
            written.append(domain_id)
            logger.info(
                "Bootstrapped domain '%s' (%d functions, %d entities, %d triggers)",
                domain_id,
                len(functions),
                len(entities),
                len(triggers),
            )
        return written

    def register_missing_entities(
        self,
        domain_id: str,
        names: Iterable[str],
        kinds: dict[str, ValidatorKind] | None = None,
    ) -> list[str]:
        """Register entity definitions that do not exist yet. Returns the names added."""
        added: list[str] = []
        for name in names:
            try:
                entity = EntityDefinition(
                    name=name,
                    validation_type=(kinds or {}).get(name, ValidatorKind.STRING),
                    domain_id=domain_id,
                )
            except PydanticValidationError:
                logger.warning("Skipping invalid entity name '%s' for domain '%s'", name, domain_id)
                continue
            if self.db.register_entity(
                domain_id,
                entity.name,
                validation_type=entity.validation_type.value,
                extraction_hint="",
                replace=False,
            ):
                added.append(entity.name)
        if added:
            logger.info("Auto-registered entities for '%s': %s", domain_id, ", ".join(added))
            self.invalidate(domain_id)
        return added


def read_bootstrap_payload(file_path: str = "", raw_json: str = "") -> dict[str, Any] | None:
    """Bootstrap document from a file path or an inline JSON string (file wins)."""
    if file_path:
        path = Path(file_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Bootstrap file not found: {path}")
        return json.loads(path.read_text(encoding="utf-8"))
    if raw_json.strip():
        try:
            return json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid BOOTSTRAP_DOMAINS_JSON: {exc}") from exc
    return None
