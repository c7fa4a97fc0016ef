"""
Workflow Engine - Main CLI Entrypoint.

Wires all layers and runs the interactive CLI loop or the HTTP API.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from conversation.manager import ConversationManager
from entry.cli import CLIAdapter
from execution.engine import ExecutionEngine
from execution.fallback import FallbackExecutor
from intent.matcher import IntentMatcher
from intent.validator import IntentValidator
from learning.pattern_learner import PatternLearner
from memory.store import EngineStore, SQLiteEngineStore
from models.selector import ModelSelector
from orchestrator.orchestrator import TurnOrchestrator
from planner.quality import check_plan_quality
from planner.resolver import WorkflowResolver
from planner.synthesizer import PlanSynthesizer
from registry.db import RegistryDB
from registry.http_handler import DomainApiClient
from registry.loader import DomainConfigLoader, read_bootstrap_payload
from shared.errors import ConfigurationError, EngineError
from shared.workflow_contracts import Plan

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

MODEL_BASE_URL = os.getenv("MODEL_BASE_URL", "http://localhost:11434").strip() or "http://localhost:11434"
ENGINE_DB_PATH = os.getenv("ENGINE_DB_PATH", "engine.db")
REGISTRY_DB_PATH = os.getenv("REGISTRY_DB_PATH", "registry.db")
CONVERSATION_DB_PATH = os.getenv("CONVERSATION_DB_PATH", "conversations.db")
BOOTSTRAP_DOMAINS_FILE = os.getenv("BOOTSTRAP_DOMAINS_FILE", "").strip()
BOOTSTRAP_DOMAINS_JSON = os.getenv("BOOTSTRAP_DOMAINS_JSON", "").strip()
DEFAULT_DOMAIN_ID = os.getenv("DEFAULT_DOMAIN_ID", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8080"))
CONVERSATION_HISTORY_ENABLED = os.getenv("CONVERSATION_HISTORY_ENABLED", "true").strip().lower() in (
    "1",
    "true",
    "yes",
    "on",
)

# ─── Rich Console ───────────────────────────────────────────────

console = Console()


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ─── Pipeline ───────────────────────────────────────────────────


@dataclass
class Pipeline:
    """Every long-lived component, wired once per process."""

    registry_db: RegistryDB
    config_loader: DomainConfigLoader
    store: EngineStore
    conversation: ConversationManager | None
    model_selector: ModelSelector
    domain_client: DomainApiClient
    resolver: WorkflowResolver
    engine: ExecutionEngine
    learner: PatternLearner
    orchestrator: TurnOrchestrator

    async def aclose(self) -> None:
        await self.model_selector.aclose()
        await self.domain_client.aclose()
        if self.conversation is not None:
            self.conversation.close()
        self.store.close()


def bootstrap_configuration(
    config_loader: DomainConfigLoader,
    store: EngineStore,
    payload: dict[str, Any] | list[dict[str, Any]],
) -> list[str]:
    """Apply a bootstrap document: domain definitions, then any configured plans.

    Configured plans pass the same quality gate as synthesized ones.
    """
    domain_ids = config_loader.bootstrap(payload)
    items = payload.get("domains", []) if isinstance(payload, dict) else payload
    for raw in items:
        plans_raw = raw.get("plans", []) or []
        if not plans_raw:
            continue
        config = config_loader.load(raw["id"])
        for plan_raw in plans_raw:
            try:
                plan = Plan.model_validate({**plan_raw, "domainId": raw["id"], "provenance": "configured"})
            except ValueError as exc:
                raise ConfigurationError(f"Invalid plan in domain '{raw['id']}': {exc}") from exc
            issues = check_plan_quality(plan, config)
            if issues:
                raise ConfigurationError(f"Configured plan '{plan.name}' in domain '{raw['id']}' rejected: {'; '.join(issues)}")
            store.save_plan(plan)
            logger.info("Configured plan %s for %s: %s", plan.id, raw["id"], plan.intent_triggers)
    return domain_ids


def build_pipeline(
    *,
    engine_db_path: str | None = None,
    registry_db_path: str | None = None,
    conversation_db_path: str | None = None,
    model_transport: Any = None,
    domain_transport: Any = None,
) -> Pipeline:
    """Wire all layers together."""
    registry_db = RegistryDB(db_path=registry_db_path or REGISTRY_DB_PATH)
    config_loader = DomainConfigLoader(registry_db)
    store = SQLiteEngineStore(db_path=engine_db_path or ENGINE_DB_PATH)

    payload = read_bootstrap_payload(BOOTSTRAP_DOMAINS_FILE, BOOTSTRAP_DOMAINS_JSON)
    if payload:
        logger.info("Applying bootstrap domains from configuration...")
        bootstrap_configuration(config_loader, store, payload)

    conversation = (
        ConversationManager(db_path=conversation_db_path or CONVERSATION_DB_PATH)
        if CONVERSATION_HISTORY_ENABLED
        else None
    )
    model_selector = ModelSelector(base_url=MODEL_BASE_URL, transport=model_transport)
    domain_client = DomainApiClient(transport=domain_transport)

    learner = PatternLearner(store, config_loader=config_loader)
    resolver = WorkflowResolver(store, PlanSynthesizer(model_selector), config_loader=config_loader)
    engine = ExecutionEngine(store, domain_client)
    orchestrator = TurnOrchestrator(
        config_loader=config_loader,
        store=store,
        matcher=IntentMatcher(),
        validator=IntentValidator(model_selector),
        resolver=resolver,
        engine=engine,
        fallback=FallbackExecutor(model_selector, domain_client, learner=learner),
        conversation=conversation,
    )
    return Pipeline(
        registry_db=registry_db,
        config_loader=config_loader,
        store=store,
        conversation=conversation,
        model_selector=model_selector,
        domain_client=domain_client,
        resolver=resolver,
        engine=engine,
        learner=learner,
        orchestrator=orchestrator,
    )


# ─── Interactive loop ───────────────────────────────────────────


async def run_agent_loop(domain_id: str) -> None:
    """Interactive CLI loop against one domain."""
    try:
        pipeline = build_pipeline()
        config = pipeline.config_loader.load(domain_id)
    except EngineError as e:
        console.print(f"[bold red]Failed to initialize pipeline:[/] {e}")
        sys.exit(1)

    cli = CLIAdapter(domain_id=domain_id)
    console.print(Panel(
        Text.from_markup(
            f"[bold cyan]{config.domain.display_name or domain_id}[/bold cyan]\n"
            f"[dim]Session: {cli.session_id} • Functions: {len(config.external_functions())}[/dim]\n"
            "[dim]Type your request or 'exit' to quit[/dim]"
        ),
        border_style="cyan",
        box=box.DOUBLE,
    ))

    try:
        while True:
            raw_input = console.input("[bold cyan]You → [/]")
            if raw_input.strip().lower() in ("exit", "quit", "q"):
                console.print("[dim]Goodbye![/dim]")
                break
            if not raw_input.strip():
                continue

            request = cli.read_input(raw_input)
            with console.status("[yellow]Thinking...[/yellow]", spinner="dots"):
                response = await pipeline.orchestrator.handle_turn(request)

            style = "green" if response.terminal and response.metadata.get("status") != "failed" else "cyan"
            console.print(Panel(response.text, border_style=style, box=box.ROUNDED))
            path = response.metadata.get("path", "")
            intent = response.metadata.get("intent", "")
            console.print(f"[dim]{path} • {intent} • {response.session_state.get('status', '')}[/dim]")
    finally:
        await pipeline.aclose()


# ─── Admin commands ─────────────────────────────────────────────


def admin_list_domains() -> None:
    db = RegistryDB(db_path=REGISTRY_DB_PATH)
    table = Table(title="Registered Domains")
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="magenta")
    for domain in db.list_domains():
        table.add_row(domain["id"], domain["display_name"] or "")
    console.print(table)


def admin_bootstrap(file_path: str) -> None:
    config_loader = DomainConfigLoader(RegistryDB(db_path=REGISTRY_DB_PATH))
    store = SQLiteEngineStore(db_path=ENGINE_DB_PATH)
    try:
        payload = read_bootstrap_payload(file_path=file_path)
        written = bootstrap_configuration(config_loader, store, payload or {})
    except (ConfigurationError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        return
    finally:
        store.close()
    console.print(f"[bold green]Bootstrapped domains:[/] {', '.join(written) or 'none'}")


def admin_list_plans(domain_id: str) -> None:
    store = SQLiteEngineStore(db_path=ENGINE_DB_PATH)
    table = Table(title=f"Plans - {domain_id}")
    table.add_column("Id", style="cyan")
    table.add_column("Intents", style="magenta")
    table.add_column("Steps", style="dim")
    table.add_column("Provenance")
    table.add_column("Used", justify="right")
    for plan in store.list_plans(domain_id):
        table.add_row(
            plan.id,
            ", ".join(plan.intent_triggers),
            " > ".join(plan.function_sequence()),
            plan.provenance,
            str(plan.times_used),
        )
    store.close()
    console.print(table)


def admin_list_patterns(domain_id: str | None, status: str | None) -> None:
    store = SQLiteEngineStore(db_path=ENGINE_DB_PATH)
    table = Table(title="Pattern Observations")
    table.add_column("Fingerprint", style="cyan")
    table.add_column("Intent", style="magenta")
    table.add_column("Sequence", style="dim")
    table.add_column("Seen", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Status", style="green")
    if status == "suggested":
        observations = PatternLearner(store).list_suggestions(domain_id)
    else:
        observations = store.list_observations(domain_id=domain_id, status=status)
    for obs in observations:
        table.add_row(
            obs.fingerprint[:16],
            obs.intent,
            " > ".join(obs.function_sequence),
            str(obs.times_observed),
            f"{obs.success_rate:.0%}",
            obs.status,
        )
    store.close()
    console.print(table)


def admin_approve_pattern(fingerprint: str) -> None:
    store = SQLiteEngineStore(db_path=ENGINE_DB_PATH)
    learner = PatternLearner(store, config_loader=DomainConfigLoader(RegistryDB(db_path=REGISTRY_DB_PATH)))
    matches = [obs.fingerprint for obs in store.list_observations() if obs.fingerprint.startswith(fingerprint)]
    try:
        if len(matches) != 1:
            console.print(f"[bold red]Error:[/] fingerprint '{fingerprint}' matches {len(matches)} observations")
            return
        plan = learner.approve(matches[0])
        console.print(f"[bold green]Promoted plan:[/] {plan.id} ({' > '.join(plan.function_sequence())})")
    except EngineError as e:
        console.print(f"[bold red]Error:[/] {e}")
    finally:
        store.close()


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Intent-to-workflow engine")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run interactive session")
    run_parser.add_argument("--domain", default=DEFAULT_DOMAIN_ID, help="Domain id")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=API_HOST)
    serve_parser.add_argument("--port", type=int, default=API_PORT)

    subparsers.add_parser("domain-list", help="List registered domains")

    bootstrap_parser = subparsers.add_parser("bootstrap", help="Load domains from a JSON file")
    bootstrap_parser.add_argument("file", help="Bootstrap JSON path")

    plans_parser = subparsers.add_parser("plans", help="List cached plans of a domain")
    plans_parser.add_argument("domain", help="Domain id")

    patterns_parser = subparsers.add_parser("patterns", help="List pattern observations")
    patterns_parser.add_argument("--domain", default=None, help="Optional domain filter")
    patterns_parser.add_argument("--status", default=None, choices=["observed", "suggested", "approved"])

    approve_parser = subparsers.add_parser("approve", help="Promote a suggested pattern to a plan")
    approve_parser.add_argument("fingerprint", help="Fingerprint (or unique prefix)")

    args = parser.parse_args()

    if args.command == "domain-list":
        admin_list_domains()
    elif args.command == "bootstrap":
        admin_bootstrap(args.file)
    elif args.command == "plans":
        admin_list_plans(args.domain)
    elif args.command == "patterns":
        admin_list_patterns(args.domain, args.status)
    elif args.command == "approve":
        admin_approve_pattern(args.fingerprint)
    elif args.command == "serve":
        import uvicorn

        uvicorn.run("api.server:app", host=args.host, port=args.port)
    elif args.command == "run":
        if not args.domain:
            console.print("[bold red]Error:[/] pass --domain or set DEFAULT_DOMAIN_ID")
            sys.exit(2)
        try:
            asyncio.run(run_agent_loop(args.domain))
        except KeyboardInterrupt:
            pass
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
