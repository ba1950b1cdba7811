"""
Typer CLI for the learning path engine.

Commands:
    learnpath db init            - Create tables from the SQLAlchemy models
    learnpath db check           - Verify the tables every stage needs exist
    learnpath stage list         - List runnable stages
    learnpath stage run STAGE    - Run one stage and print its output JSON
    learnpath saga create        - Open a saga run for an owner
    learnpath saga compensate ID - Run a saga's compensations

Usage:
    learnpath --help
    learnpath stage run concept_graph_build --owner <uuid> --set <uuid> --saga <uuid>
    learnpath stage run psu_promotion --owner <uuid>
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.pipeline import concept_graph, concept_graph_patch, psu_promotion, realize_activities
from src.pipeline.errors import PipelineError
from src.pipeline.logging_setup import configure_logging
from src.pipeline.stage import StageDeps, StageInput

app = typer.Typer(help="learnpath CLI: materials -> concept graph -> activities", no_args_is_help=True)
console = Console()

StageRunner = Callable[[StageDeps, StageInput], Awaitable[Any]]

STAGES: dict[str, tuple[StageRunner, str]] = {
    concept_graph.STAGE: (concept_graph.run, "Build the path concept graph from materials"),
    concept_graph_patch.STAGE: (concept_graph_patch.run, "Extend an existing concept graph"),
    realize_activities.STAGE: (realize_activities.run, "Generate activities for path node slots"),
    psu_promotion.STAGE: (psu_promotion.run, "Promote recurring structural units to compound concepts"),
}


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, settings.log_json)


# ========================================
# Context Builder (Dependency Injection)
# ========================================


def _parse_uuid(value: str | None, name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]✗[/red] Invalid {name}: {value}")
        raise typer.Exit(code=2)


def build_deps(with_llm: bool = True) -> StageDeps:
    """
    Default collaborators: Gemini for LLM calls, Pinecone when a key is configured.

    Clients are imported lazily so ``db`` commands work without the AI SDKs configured.
    """
    settings = get_settings()
    deps = StageDeps(settings=settings)
    if with_llm and settings.gemini_api_key:
        from src.integrations.llm_client import GeminiClient

        deps.llm = GeminiClient()
    if settings.pinecone_api_key:
        from src.integrations.vector_store import PineconeVectorStore

        deps.vector_store = PineconeVectorStore()
    else:
        logger.warning("PINECONE_API_KEY not set; vector upserts and dense retrieval are disabled")
    return deps


def _progress_printer(stage: str, pct: int, msg: str) -> None:
    console.print(f"[dim]{stage}[/dim] [cyan]{pct:>3}%[/cyan] {msg}")


def _to_jsonable(out: Any) -> Any:
    if hasattr(out, "to_dict"):
        return out.to_dict()
    return out


# ========================================
# Database
# ========================================

db_app = typer.Typer(help="Database management (init, check)")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from src.db.database import init_db

    logger.info("Initializing database tables...")
    init_db()
    rprint("[green]✓[/green] Database initialized!")


@db_app.command("check")
def db_check() -> None:
    """Report which stage tables exist; exits non-zero when a required one is missing."""
    from src.db.database import engine
    from src.db.schema_validator import CORE_REQUIREMENTS, STAGE_REQUIREMENTS, SchemaValidator

    validator = SchemaValidator(engine)
    table = Table(title="Schema")
    table.add_column("Stage", style="cyan")
    table.add_column("Table")
    table.add_column("Status")
    ok = True
    groups = {"core": CORE_REQUIREMENTS, **STAGE_REQUIREMENTS}
    for stage, reqs in groups.items():
        for req in reqs:
            exists = validator.table_exists(req.name)
            if not exists and req.required:
                ok = False
            if exists:
                status = "[green]✓[/green]"
            else:
                status = "[red]missing[/red]" if req.required else "[yellow]optional[/yellow]"
            table.add_row(stage, req.name, status)
    console.print(table)
    if not ok:
        raise typer.Exit(code=1)


# ========================================
# Stages
# ========================================

stage_app = typer.Typer(help="Run pipeline stages")
app.add_typer(stage_app, name="stage")


@stage_app.command("list")
def stage_list() -> None:
    """List runnable stages."""
    table = Table(title="Stages")
    table.add_column("Stage", style="cyan")
    table.add_column("Description")
    for name, (_, desc) in STAGES.items():
        table.add_row(name, desc)
    console.print(table)


@stage_app.command("run")
def stage_run(
    stage: str = typer.Argument(..., help="Stage name (see `stage list`)"),
    owner: str = typer.Option(..., "--owner", help="Owner user ID"),
    material_set: str = typer.Option(None, "--set", help="Material set ID"),
    saga: str = typer.Option(None, "--saga", help="Saga run ID"),
    path: str = typer.Option(None, "--path", help="Path ID (defaults to the owner/set canonical path)"),
    skip_schema_check: bool = typer.Option(False, "--skip-schema-check", help="Don't verify tables first"),
) -> None:
    """Run one stage and print its output JSON."""
    entry = STAGES.get(stage)
    if entry is None:
        rprint(f"[red]✗[/red] Unknown stage: {stage}. Known: {', '.join(STAGES)}")
        raise typer.Exit(code=2)
    runner, _ = entry

    if not skip_schema_check:
        from src.db.database import engine
        from src.db.schema_validator import SchemaValidationError, SchemaValidator

        try:
            SchemaValidator(engine).validate_stage(stage)
        except SchemaValidationError as e:
            rprint(f"[red]✗[/red] {e}")
            raise typer.Exit(code=1)

    inp = StageInput(
        owner_user_id=_parse_uuid(owner, "owner"),
        material_set_id=_parse_uuid(material_set, "set"),
        saga_id=_parse_uuid(saga, "saga"),
        path_id=_parse_uuid(path, "path"),
        report=_progress_printer,
    )
    deps = build_deps(with_llm=stage != psu_promotion.STAGE or get_settings().psu_promotion_use_llm)

    try:
        out = asyncio.run(runner(deps, inp))
    except PipelineError as e:
        rprint(f"[red]✗[/red] {stage} failed: {e}")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(_to_jsonable(out), default=str))


# ========================================
# Saga
# ========================================

saga_app = typer.Typer(help="Saga runs and compensations")
app.add_typer(saga_app, name="saga")


@saga_app.command("create")
def saga_create(owner: str = typer.Option(..., "--owner", help="Owner user ID")) -> None:
    """Open a saga run and print its ID."""
    from src.db.database import session_scope
    from src.db.repositories import SagaRepository

    owner_id = _parse_uuid(owner, "owner")
    with session_scope() as session:
        run = SagaRepository(session).create_run(owner_id)
        saga_id = run.id
    rprint(f"[green]✓[/green] Saga {saga_id}")


@saga_app.command("compensate")
def saga_compensate(saga_id: str = typer.Argument(..., help="Saga run ID")) -> None:
    """Run compensations for every pending action, newest first."""
    from src.pipeline.saga import SagaError, SagaService

    sid = _parse_uuid(saga_id, "saga")
    deps = build_deps(with_llm=False)
    service = SagaService(vector_store=deps.vector_store)
    try:
        counts = asyncio.run(service.compensate(sid))
    except SagaError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Saga {sid}")
    table.add_column("Result", style="cyan")
    table.add_column("Actions", justify="right")
    for key, value in counts.items():
        table.add_row(key, str(value))
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
