"""
studygraph CLI - build and maintain session knowledge graphs
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

import click
from rich.console import Console
from rich.table import Table

from .errors import BatchAlreadyRunning
from .indexing.batch import BatchStatus, PhaseStatus, UnitStatus
from .indexing.orchestrator import Phase, RunOptions
from .service import build_service, load_session_file
from .settings import settings

console = Console()

_UNIT_STYLE = {
    UnitStatus.COMPLETED: "green",
    UnitStatus.FAILED: "red",
    UnitStatus.CANCELLED: "yellow",
    UnitStatus.INDEXING: "cyan",
    UnitStatus.PENDING: "white",
}
_PHASE_STYLE = {
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.FAILED: "red",
    PhaseStatus.CANCELLED: "yellow",
    PhaseStatus.SKIPPED: "dim",
}


def _configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _metadata_cell(r) -> str:
    if r.metadata_status is None:
        return ""
    style = _UNIT_STYLE[r.metadata_status]
    return f"[{style}]{r.metadata_status.value}[/{style}]"


def _errors(r) -> list[str]:
    errors = []
    if r.error_type:
        errors.append(f"{r.error_type.value}: {r.error_message}")
    if r.metadata_error_type:
        errors.append(f"metadata {r.metadata_error_type.value}: {r.metadata_error_message}")
    return errors


def _print_status(status: BatchStatus, names: dict[str, str]) -> None:
    phases = Table(title=f"Batch {status.batch_id[:8]} ({status.state.value})")
    phases.add_column("Phase", style="cyan", width=16)
    phases.add_column("Status", width=10)
    phases.add_column("Details", overflow="fold")
    for phase in Phase:
        p = getattr(status.phase, f"phase{int(phase)}")
        details = []
        if p.completed is not None:
            details.append(f"{p.completed} completed, {p.failed or 0} failed")
        if p.links_added is not None:
            details.append(f"{p.links_added} links added")
        if p.stats:
            details.append(", ".join(f"{k}={v}" for k, v in p.stats.items() if v))
        if p.message:
            details.append(p.message)
        style = _PHASE_STYLE.get(p.status, "white")
        phases.add_row(
            f"{int(phase)} {phase.name.lower()}", f"[{style}]{p.status.value}[/{style}]", "; ".join(details)
        )
    console.print(phases)

    if not status.resources:
        return
    units = Table(title="Resources")
    units.add_column("Resource", style="blue")
    units.add_column("Status", width=10)
    units.add_column("Attempts", justify="right", width=8)
    units.add_column("Time", justify="right", width=8)
    units.add_column("Metadata", width=10)
    units.add_column("Error", style="red", overflow="fold")
    for r in status.resources:
        style = _UNIT_STYLE[r.status]
        units.add_row(
            names.get(r.id, r.id),
            f"[{style}]{r.status.value}[/{style}]",
            str(r.attempts),
            f"{r.duration_ms / 1000:.1f}s" if r.duration_ms is not None else "",
            _metadata_cell(r),
            "; ".join(_errors(r)),
        )
    console.print(units)


def _resource_names(db, session_id: str) -> dict[str, str]:
    with db.read() as tx:
        return {r.id: r.name for r in tx.list_resources(session_id)}


async def _run_batch(service, session_id: str, options: RunOptions, resource_id: str | None) -> BatchStatus:
    """Run a batch; the first Ctrl-C cancels, the second kills running agents."""
    orchestrator = service.orchestrator
    interrupts = 0

    def _interrupt() -> None:
        nonlocal interrupts
        interrupts += 1
        force = interrupts > 1
        if orchestrator.cancel(session_id, force=force) or force:
            console.print(
                "[yellow]Killing running agents...[/yellow]"
                if force
                else "[yellow]Cancelling after running resources finish (Ctrl-C again to kill)[/yellow]"
            )

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _interrupt)
    try:
        if resource_id is not None:
            return await orchestrator.index_resource(session_id, resource_id, options)
        return await orchestrator.run_session(session_id, options)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def _index(session_id: str, resource_id: str | None, reindex: bool, thoroughness: str | None, skip: tuple[int, ...]):
    _configure_logging()
    service = build_service(settings)
    options = RunOptions(
        reindex=reindex,
        thoroughness=thoroughness or settings.default_thoroughness,
        skip_phases=frozenset(skip),
    )
    try:
        status = asyncio.run(_run_batch(service, session_id, options, resource_id))
    except BatchAlreadyRunning as e:
        raise click.ClickException(str(e)) from e
    except LookupError as e:
        raise click.ClickException(str(e)) from e
    _print_status(status, _resource_names(service.db, session_id))
    if any(r.status is UnitStatus.FAILED for r in status.resources):
        raise SystemExit(1)


@click.group()
def cli():
    """studygraph - knowledge graphs for study sessions"""
    pass


@cli.command()
def version():
    """Print the installed version"""
    from . import __version__

    click.echo(__version__)


@cli.command("init-db")
def init_db():
    """Create the database schema"""
    _configure_logging()
    service = build_service(settings)
    console.print(f"[green]✓ Database ready at {service.db.path}[/green]")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def load(path):
    """Load resources, files and chunk trees from a JSON document"""
    _configure_logging()
    service = build_service(settings)
    stats = load_session_file(service.db, path)
    console.print(
        f"[green]✓ Loaded {stats.resources} resources, {stats.files} files, {stats.chunks} chunks[/green]"
    )


_thoroughness = click.option(
    "--thoroughness",
    type=click.Choice(["quick", "standard", "thorough"]),
    default=None,
    help="Extraction depth (defaults to STUDYGRAPH_DEFAULT_THOROUGHNESS)",
)
_skip = click.option(
    "--skip-phase", "skip", multiple=True, type=click.IntRange(1, 5), help="Phase number to skip (repeatable)"
)


@cli.command()
@click.argument("session_id")
@click.option("--reindex", is_flag=True, help="Re-extract resources that are already graph-indexed")
@_thoroughness
@_skip
def index(session_id, reindex, thoroughness, skip):
    """Run all indexing phases for a session"""
    _index(session_id, None, reindex, thoroughness, skip)


@cli.command("index-resource")
@click.argument("session_id")
@click.argument("resource_id")
@_thoroughness
@_skip
def index_resource(session_id, resource_id, thoroughness, skip):
    """Run the indexing phases for a single resource"""
    _index(session_id, resource_id, False, thoroughness, skip)


@cli.command()
@click.argument("session_id")
@click.option("--skip-orphans", is_flag=True, help="Keep concepts without relationships")
def cleanup(session_id, skip_orphans):
    """Deduplicate relationships, drop orphans and repair dangling edges"""
    _configure_logging()
    service = build_service(settings)
    stats = service.cleanup.run(session_id, skip_orphans=skip_orphans)

    table = Table(title=f"Cleanup for {session_id}")
    table.add_column("Pass", style="cyan")
    table.add_column("Removed", justify="right", style="green")
    for name, count in stats.as_dict().items():
        table.add_row(name.replace("_", " "), str(count))
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.argument("canonical")
@click.argument("duplicates", nargs=-1, required=True)
@click.option("--description", default=None, help="Replace the canonical concept's description")
def merge(session_id, canonical, duplicates, description):
    """Merge duplicate concepts into CANONICAL"""
    _configure_logging()
    service = build_service(settings)
    try:
        stats = service.cleanup.merge_concepts(session_id, canonical, list(duplicates), description)
    except LookupError as e:
        raise click.ClickException(str(e)) from e
    if not stats.merged:
        console.print("[yellow]Nothing merged[/yellow]")
        return
    console.print(
        f"[green]✓ Merged {', '.join(stats.merged)}: {stats.relationships_redirected} relationships "
        f"redirected, {stats.duplicates_removed} duplicates removed[/green]"
    )


@cli.command()
@click.argument("session_id")
@click.option("--limit", default=50, help="Number of concepts to show")
def concepts(session_id, limit):
    """List a session's concepts"""
    service = build_service(settings)
    with service.db.read() as tx:
        items = tx.list_concepts(session_id)
        degree = {}
        for rel in tx.list_relationships(session_id):
            degree[rel.source_id] = degree.get(rel.source_id, 0) + 1
            degree[rel.target_id] = degree.get(rel.target_id, 0) + 1

    if not items:
        console.print("[yellow]No concepts[/yellow]")
        return

    table = Table(title=f"Concepts in {session_id} ({len(items)})")
    table.add_column("Name", style="cyan")
    table.add_column("Links", justify="right", style="green", width=6)
    table.add_column("Aliases", style="magenta")
    table.add_column("Description", style="white", overflow="fold")
    for c in items[:limit]:
        desc = c.description or ""
        table.add_row(
            c.name,
            str(degree.get(c.id, 0)),
            ", ".join(c.aliases),
            desc[:100] + "..." if len(desc) > 100 else desc,
        )
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.argument("query")
@click.option("--limit", default=10, help="Number of results")
def search(session_id, query, limit):
    """Search a session's material"""
    _configure_logging()
    service = build_service(settings)
    hits = service.search(session_id, query, limit)

    if not hits:
        console.print(f"[yellow]No results for '{query}'[/yellow]")
        return

    table = Table(title=f"Results for '{query}' ({len(hits)})")
    table.add_column("Chunk", style="dim", width=10)
    table.add_column("Resource", style="blue")
    table.add_column("Title", style="cyan")
    table.add_column("Score", justify="right", style="green", width=6)
    table.add_column("Content", style="white", overflow="fold")
    for hit in hits:
        content = hit.chunk.content
        table.add_row(
            hit.chunk.id[:8],
            hit.resource_name,
            hit.chunk.title or "",
            str(hit.score),
            content[:100] + "..." if len(content) > 100 else content,
        )
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.argument("chunk_id")
def read(session_id, chunk_id):
    """Print one chunk"""
    _configure_logging()
    service = build_service(settings)
    try:
        chunk = service.read_chunk(session_id, chunk_id)
    except LookupError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[bold cyan]{chunk.title or '(untitled)'}[/bold cyan]")
    click.echo(chunk.content)


@cli.command()
@click.argument("session_id")
@click.confirmation_option(prompt="Delete every concept and relationship of this session?")
def clear(session_id):
    """Delete a session's graph and reset its graph-indexed flags"""
    _configure_logging()
    service = build_service(settings)
    n_concepts, n_rels = service.cleanup.clear_graph(session_id)
    console.print(f"[green]✓ Removed {n_concepts} concepts and {n_rels} relationships[/green]")


if __name__ == "__main__":
    cli()
