"""
Command-line interface for Feed Relay.

Uses Typer to provide the ``run``, ``fetch`` and ``status`` commands.
Loads a .env file first so API keys and bot tokens can live there.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import AppConfig, load_config
from .core.types import utc_now
from .errors import FeedRelayError
from .llm.tracing import flush
from .pipeline.runner import PipelineReport, run_pipeline
from .store.database import Database
from .store.feed_state import FeedStateRepository
from .store.items import ItemRepository

app = typer.Typer(add_completion=False)
console = Console()


def _load(config: Path | None, db: Path | None, log_level: str | None, strict: bool) -> AppConfig:
    load_dotenv()
    try:
        cfg = load_config(str(config) if config else None, strict_feeds=strict)
    except FeedRelayError as exc:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        raise typer.Exit(code=2) from exc
    if db is not None:
        cfg.store.path = str(db)
    if log_level:
        cfg.logging.level = log_level
    return cfg


def _execute(cfg: AppConfig, **kwargs) -> PipelineReport:
    try:
        return run_pipeline(cfg, console=console, **kwargs)
    except FeedRelayError as exc:
        console.print(f"[red]Run aborted:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    finally:
        flush()


@app.command()
def run(
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c", exists=True),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print messages instead of sending them."),
    progress: bool = typer.Option(True, "--progress/--no-progress"),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level."),
    strict: bool = typer.Option(False, "--strict", help="Abort on the first invalid feed."),
):
    """Run the full pipeline: fetch, summarize, dedup, publish."""
    cfg = _load(config, db, log_level, strict)
    _print_report(_execute(cfg, show_progress=progress, dry_run=dry_run))


@app.command()
def fetch(
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c", exists=True),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path."),
    progress: bool = typer.Option(True, "--progress/--no-progress"),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level."),
    strict: bool = typer.Option(False, "--strict", help="Abort on the first invalid feed."),
):
    """Poll feeds and store new items, without any AI or publishing."""
    cfg = _load(config, db, log_level, strict)
    _print_report(_execute(cfg, show_progress=progress, fetch_only=True))


@app.command()
def status(
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c", exists=True),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path."),
):
    """Show the polling state of every configured feed."""
    cfg = _load(config, db, None, False)
    now = utc_now()
    with Database(cfg.store.path) as database:
        states = FeedStateRepository(database)
        per_feed = ItemRepository(database).stats()["per_feed"]
        table = Table(title="Feeds")
        for column in ("ID", "Name", "Enabled", "Last status", "Errors", "Backoff (s)", "Fetched at", "Items"):
            table.add_column(column)
        for feed in cfg.feeds:
            state = states.get(feed.id)
            table.add_row(
                str(feed.id),
                escape(feed.label),
                "yes" if feed.enabled else "no",
                str(state.last_status) if state else "-",
                str(state.error_count) if state else "-",
                f"{state.backoff_remaining(now):.0f}" if state and state.is_in_backoff(now) else "-",
                state.fetched_at.strftime("%Y-%m-%d %H:%M") if state and state.fetched_at else "-",
                str(per_feed.get(feed.id, 0)),
            )
    console.print(table)


def _print_report(report: PipelineReport) -> None:
    counters = report.counters()
    console.print(f"Feeds: {counters['feeds']}")
    console.print(f"Items: {counters['items_new']} new, {counters['items_existing']} already stored")
    if counters["analyses"]:
        console.print(f"Analyses: {counters['analyses']}")
    if report.decisions:
        console.print(f"Dedup: {counters['decisions']}")
    if counters["publications"]:
        console.print(f"Publications: {counters['publications']}")
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}", highlight=False)


if __name__ == "__main__":
    app()
