"""Delve CLI — the user interface.

Commands:
    delve run        — Single-provider research run (inline)
    delve multi      — Multi-provider research run (inline)
    delve submit     — Enqueue a run for the background worker
    delve status     — Status of a single or multi-provider run
    delve list       — Recent runs
    delve reconcile  — Refresh aggregate snapshots from child runs
    delve cache      — Search cache statistics / clearing
    delve providers  — Provider availability
    delve worker     — Run the Shadows worker in the foreground
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from delve.errors import DelveError
from delve.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="delve",
    help="🔎 Delve — iterative multi-provider web research",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
cache_app = typer.Typer(help="🗄 Search cache maintenance", no_args_is_help=True)
app.add_typer(cache_app, name="cache")
console = Console()

_STATUS_STYLE = {
    "completed": "green",
    "failed": "red",
    "planning": "dim",
    "searching": "cyan",
    "reflecting": "magenta",
    "writing": "yellow",
    "analyzing": "yellow",
}

DEPTH_HELP = "quick | surface | deep | comprehensive"


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/]"


def _run_cli(coro) -> None:
    """Run ``coro``, mapping Delve errors to a red message and exit code 1."""
    try:
        asyncio.run(coro)
    except DelveError as exc:
        console.print(f"[red]✗ {escape(str(exc))}[/]")
        raise typer.Exit(1)


# ── delve run ─────────────────────────────────────────────────


@app.command()
def run(
    query: str = typer.Argument(..., help="The research question"),
    depth: str = typer.Option("deep", "--depth", "-d", help=DEPTH_HELP),
    provider: str = typer.Option(None, "--provider", "-p", help="Provider name (default from settings)"),
):
    """🔎 Research a question with one provider and print the report."""
    _run_cli(_run(query, depth, provider))


async def _run(query: str, depth: str, provider: str | None):
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        with console.status(f"[dim]Researching ({depth})...[/]", spinner="dots"):
            state = await service.run(query, depth, provider)
    finally:
        await service.close()

    console.print(Markdown(state.final_report or ""))
    console.print(
        f"\n[dim]Run: [bold]{state.id}[/] | Provider: {state.provider} | "
        f"Iterations: {state.iterations} | Sources: {len(state.search_results)}[/]"
    )


# ── delve multi ───────────────────────────────────────────────


@app.command()
def multi(
    query: str = typer.Argument(..., help="The research question"),
    depth: str = typer.Option("deep", "--depth", "-d", help=DEPTH_HELP),
    provider: list[str] = typer.Option(None, "--provider", "-p", help="Repeat to pick providers (default: all available)"),
):
    """🧭 Research with several providers, compare and consolidate."""
    _run_cli(_multi(query, depth, provider or None))


async def _multi(query: str, depth: str, providers: list[str] | None):
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        with console.status(f"[dim]Researching with multiple providers ({depth})...[/]", spinner="dots"):
            state = await service.run_multi_provider(query, depth, providers)
    finally:
        await service.close()

    table = Table(title="Provider Runs")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Sources", justify="right")
    for name in state.providers:
        child = state.provider_results[name]
        table.add_row(name, _styled(child.status.value), str(child.iterations), str(len(child.search_results)))
    console.print(table)

    if state.comparison is not None:
        console.print(f"[dim]Comparison confidence: {state.comparison.overall_confidence:.2f}[/]\n")
    console.print(Markdown(state.consolidated_report or ""))
    console.print(f"\n[dim]Run: [bold]{state.id}[/][/]")


# ── delve submit ──────────────────────────────────────────────


@app.command()
def submit(
    query: str = typer.Argument(..., help="The research question"),
    depth: str = typer.Option("deep", "--depth", "-d", help=DEPTH_HELP),
    provider: list[str] = typer.Option(None, "--provider", "-p", help="Provider (repeatable with --multi)"),
    multi_provider: bool = typer.Option(False, "--multi", "-m", help="Multi-provider run"),
):
    """📨 Enqueue a run for the background worker and print its id."""
    _run_cli(_submit(query, depth, provider or [], multi_provider))


async def _submit(query: str, depth: str, providers: list[str], multi_provider: bool):
    from delve.tasks.research import enqueue_multi_provider_run, enqueue_research_run

    if multi_provider:
        run_id = await enqueue_multi_provider_run(query, depth, providers or None)
    else:
        if len(providers) > 1:
            console.print("[yellow]⚠ Several providers given without --multi — using the first[/]")
        run_id = await enqueue_research_run(query, depth, providers[0] if providers else None)
    console.print(f"[green]✓ Submitted[/] [bold]{run_id}[/]")


# ── delve status ──────────────────────────────────────────────


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run id (research_… or multi_research_…)"),
    report: bool = typer.Option(False, "--report", "-r", help="Print the final report if available"),
):
    """📊 Show the status of a run."""
    _run_cli(_status(run_id, report))


async def _status(run_id: str, show_report: bool):
    from delve.errors import RunNotFoundError
    from delve.research.service import ResearchService
    from delve.research.store import is_multi_run_id

    service = ResearchService()
    try:
        if is_multi_run_id(run_id):
            progress = await service.get_multi_provider_progress(run_id)
            state = await service.get_multi_provider_status(run_id) if progress and show_report else None
            if progress is None:
                raise RunNotFoundError(run_id)
            _print_progress(progress)
            if state is not None and state.consolidated_report:
                console.print(Markdown(state.consolidated_report))
            return

        summary = await service.get_run_status(run_id)
        if summary is None:
            raise RunNotFoundError(run_id)
    finally:
        await service.close()

    body = Table(show_header=False, box=None, padding=(0, 2))
    body.add_column("Field", style="cyan")
    body.add_column("Value", style="white")
    body.add_row("Query", summary.original_query)
    body.add_row("Status", _styled(summary.status.value))
    body.add_row("Provider", summary.provider or "-")
    body.add_row("Iterations", str(summary.iterations))
    body.add_row("Sources", str(summary.sources_count))
    body.add_row("Gaps", str(summary.gaps_count))
    body.add_row("Updated", summary.updated_at.isoformat())
    if summary.error:
        body.add_row("Error", f"[red]{escape(summary.error)}[/]")
    console.print(Panel(body, title=f"[bold cyan]{summary.id}[/]", border_style="cyan"))
    if show_report and summary.final_report:
        console.print(Markdown(summary.final_report))


def _print_progress(progress: dict) -> None:
    table = Table(title=f"{progress['id']} — {_styled(progress['status'])}")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", style="dim")
    for p in progress["providers"]:
        table.add_row(p["provider"], _styled(p["status"]), p["progress"])
    console.print(table)
    console.print(f"[bold]Current step:[/] {progress['current_step']}")
    for step in progress["completed_steps"]:
        console.print(f"  [green]✓[/] {step}")


# ── delve list ────────────────────────────────────────────────


@app.command("list")
def list_runs(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
):
    """📋 List recent runs, newest first."""
    _run_cli(_list(limit))


async def _list(limit: int):
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        listings = await service.list_runs(limit=limit)
    finally:
        await service.close()

    if not listings:
        console.print("[dim]No runs yet.[/]")
        return

    table = Table(title="Research Runs")
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Providers", style="dim")
    table.add_column("Query")
    table.add_column("Created", style="dim")
    for item in listings:
        table.add_row(
            item.id, item.kind, _styled(item.status), ", ".join(item.providers),
            item.title[:60], item.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


# ── delve reconcile ───────────────────────────────────────────


@app.command()
def reconcile(
    run_id: str = typer.Argument(None, help="Aggregate run id; all aggregates when omitted"),
):
    """🔄 Refresh multi-provider aggregates from their child runs."""
    _run_cli(_reconcile(run_id))


async def _reconcile(run_id: str | None):
    from delve.errors import RunNotFoundError
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        if run_id is None:
            count = await service.reconcile_all()
            console.print(f"[green]✓ Reconciled {count} aggregate(s)[/]")
            return
        state = await service.reconcile(run_id)
        if state is None:
            raise RunNotFoundError(run_id)
        console.print(f"[green]✓ {state.id}[/] — {_styled(state.status.value)}")
    finally:
        await service.close()


# ── delve cache ───────────────────────────────────────────────


@cache_app.command("stats")
def cache_stats():
    """📈 Cached queries, hit rate and the most reused queries."""
    _run_cli(_cache_stats())


async def _cache_stats():
    from delve.tools.search_cache import SearchCache

    cache = SearchCache()
    try:
        stats = await cache.stats()
    finally:
        await cache.close()

    console.print(
        f"[bold]Cached queries:[/] {stats['total_cached_queries']}  ·  "
        f"[bold]Hit rate:[/] {stats['cache_hit_rate']:.1%}"
    )
    if stats["top_queries"]:
        table = Table(title="Top Queries")
        table.add_column("Query", style="cyan")
        table.add_column("Hits", justify="right")
        for q in stats["top_queries"]:
            table.add_row(q["query"], str(q["hit_count"]))
        console.print(table)


@cache_app.command("clear")
def cache_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🧹 Delete every cached search result."""
    if not yes:
        typer.confirm("Clear the whole search cache?", abort=True)
    _run_cli(_cache_clear())


async def _cache_clear():
    from delve.tools.search_cache import SearchCache

    cache = SearchCache()
    try:
        removed = await cache.clear()
    finally:
        await cache.close()
    console.print(f"[green]✓ Removed {removed} cached quer{'y' if removed == 1 else 'ies'}[/]")


# ── delve providers ───────────────────────────────────────────


@app.command()
def providers():
    """🤖 Show which providers are configured."""
    from delve.config import settings
    from delve.tools.providers import PROVIDERS

    table = Table(title="Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Model", style="dim")
    table.add_column("Status")
    table.add_column("Strengths", style="dim")
    for name, spec in PROVIDERS.items():
        state = "[green]✅ available[/]" if spec.is_available(settings) else "[red]✗ no API key[/]"
        marker = " (default)" if name == settings.default_provider else ""
        table.add_row(f"{spec.display_name}{marker}", spec.model(settings), state, ", ".join(spec.strengths))
    console.print(table)


# ── delve worker ──────────────────────────────────────────────


@app.command()
def worker(
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG | INFO | WARNING | ERROR"),
):
    """⚙ Run the Shadows background worker in the foreground."""
    from delve.tasks.worker_process import main as worker_main

    worker_main(["--log-level", log_level.upper()])


# ── delve version ─────────────────────────────────────────────


@app.command()
def version():
    """📦 Show Delve version."""
    from delve import __version__
    console.print(f"[bold cyan]🔎 Delve[/] v{__version__}")


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
