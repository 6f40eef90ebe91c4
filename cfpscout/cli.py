from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from cfpscout import store
from cfpscout.config import get_settings
from cfpscout.db import init_db, session_scope
from cfpscout.evaluator import Evaluator, LLMClient
from cfpscout.events import default_bus
from cfpscout.importer import InputMalformedError, seed_database
from cfpscout.models import SessionStatus
from cfpscout.pipeline import SessionProcessor, SpeakerAssessor, write_results
from cfpscout.reporting import evaluation_summary, export_sessions, select_sessions, session_row, speaker_summary
from cfpscout.store import PersistenceError

log = logging.getLogger(__name__)

app = typer.Typer(help="Score conference session proposals and speaker profiles with an LLM")
console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


class ExportFormat(StrEnum):
    csv = "csv"
    json = "json"


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=err_console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: Path | None = typer.Option(None, "--db", help="SQLite database file (default: $CFPSCOUT_DB or ./sessions.db)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose, "db_path": db_path}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _open_db(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db_path") if ctx.obj else None)


def _make_evaluator() -> Evaluator:
    settings = get_settings()
    return LLMClient(provider=settings.llm_provider, model=settings.llm_model or None)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    scalar_rows = [(k, _format_scalar(v)) for k, v in payload.items() if not isinstance(v, (dict, list))]
    if scalar_rows:
        _render_table(title, scalar_rows)

    for key, value in payload.items():
        if isinstance(value, dict):
            _render_table(
                f"{title} · {key}",
                [(k, _format_scalar(v) if not isinstance(v, dict) else json.dumps(v)) for k, v in value.items()],
                border_style="magenta",
            )
        elif isinstance(value, list):
            _render_table(
                f"{title} · {key}",
                [("items", str(len(value))), ("preview", json.dumps(value[:3], ensure_ascii=False))],
                border_style="yellow",
            )


def _fail(message: str, code: int) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code=code)


def _run_drainable(run: Callable[[], Awaitable[T]], request_drain: Callable[[], int]) -> T:
    """Run *run* on a fresh loop. SIGINT stops pending work and lets in-flight work finish."""

    async def _main() -> T:
        loop = asyncio.get_running_loop()

        def _on_interrupt() -> None:
            dropped = request_drain()
            log.warning("Interrupted: dropped %d pending units, waiting for in-flight work", dropped)

        try:
            loop.add_signal_handler(signal.SIGINT, _on_interrupt)
            installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            installed = False
        try:
            return await run()
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("seed")
def seed_command(
    ctx: typer.Context,
    sessions_path: Path | None = typer.Option(None, "--sessions", help="Session feed JSON (default: __fixtures__/db.json)."),
    speakers_path: Path | None = typer.Option(None, "--speakers", help="Speaker feed JSON (default: __fixtures__/speakers.json)."),
) -> None:
    """Load the session and speaker feeds, upsert them, and link speakers to sessions."""
    settings = get_settings()
    _open_db(ctx)
    try:
        with session_scope() as session:
            result = seed_database(
                session,
                sessions_path or settings.sessions_feed,
                speakers_path or settings.speakers_feed,
            )
    except InputMalformedError as exc:
        raise _fail(str(exc), 2) from exc
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    _print("seed", {
        "sessions_imported": result.sessions_imported,
        "speakers_imported": result.speakers_imported,
        "links_created": result.correlation.links_created,
        "links_existing": result.correlation.links_existing,
        "unknown_speaker_refs": len(result.correlation.unknown_speaker_ids),
    }, ctx)


@app.command("process")
def process_command(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, "--limit", min=1, help="Process at most N sessions."),
    concurrency: int | None = typer.Option(None, "--concurrency", min=1, help="Sessions in flight at once (default 1)."),
    results_path: Path | None = typer.Option(None, "--results", help="Where to write the JSON run summary."),
) -> None:
    """Evaluate every unprocessed session and its speakers."""
    settings = get_settings()
    _open_db(ctx)
    processor = SessionProcessor(_make_evaluator(), concurrency=concurrency, bus=default_bus())
    try:
        summary = _run_drainable(lambda: processor.run(limit=limit), processor.request_drain)
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    path = write_results(results_path or settings.results_path, summary.to_dict())
    _print("process", {
        "queued": summary.queued,
        "processed": len(summary.processed),
        "failed": len(summary.failed),
        "skipped": summary.skipped,
        "interrupted": summary.interrupted,
        "results_path": str(path),
    }, ctx)


@app.command("assess-speakers")
def assess_speakers_command(
    ctx: typer.Context,
    concurrency: int | None = typer.Option(None, "--concurrency", min=1, help="Speakers in flight at once (default 2)."),
) -> None:
    """Assess every stored speaker and append a new evaluation for each."""
    _open_db(ctx)
    assessor = SpeakerAssessor(_make_evaluator(), concurrency=concurrency, bus=default_bus())
    try:
        result = _run_drainable(assessor.run, assessor.request_drain)
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    _print("assess-speakers", {
        "assessed": len(result.assessments),
        "defaults_used": sum(1 for a in result.assessments if a.used_fallback),
        "interrupted": result.interrupted,
    }, ctx)


@app.command("reset")
def reset_command(ctx: typer.Context) -> None:
    """Move every processed session back to unprocessed and clear its scores."""
    _open_db(ctx)
    try:
        with session_scope() as session:
            count = store.bulk_reset_processed_sessions(session)
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc
    _print("reset", {"reset": count}, ctx)


@app.command("export")
def export_command(
    ctx: typer.Context,
    fmt: ExportFormat = typer.Option(ExportFormat.csv, "--format", "-f", help="Export format."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output file (default: sessions-export.<format>)."),
    status: SessionStatus | None = typer.Option(None, "--status", help="Only export sessions in this pipeline status."),
    submitted_as: str | None = typer.Option(
        None, "--submission-status", help="Only export submissions with this feed status, e.g. Nominated.",
    ),
) -> None:
    """Export every session with its speakers and scores."""
    settings = get_settings()
    _open_db(ctx)
    path = output or settings.exports_dir / f"sessions-export.{fmt.value}"
    pipeline_status = status.value if status else None
    try:
        with session_scope() as session:
            written = export_sessions(
                session, path, fmt=fmt.value, status=pipeline_status, submitted_as=submitted_as,
            )
            total = len(select_sessions(session, status=pipeline_status, submitted_as=submitted_as))
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc
    if total == 0:
        log.warning("No sessions matched the export filters")
    _print("export", {"format": fmt.value, "path": str(written), "sessions": total}, ctx)


@app.command("sessions")
def sessions_command(
    ctx: typer.Context,
    status: SessionStatus | None = typer.Option(None, "--status", help="Only list sessions in this pipeline status."),
) -> None:
    """List processed sessions (newest first) with scores, then unprocessed ones."""
    _open_db(ctx)
    try:
        with session_scope() as session:
            processed = store.get_processed_sessions(session) if status in (None, SessionStatus.READY) else []
            unprocessed = store.get_unprocessed_sessions(session) if status in (None, SessionStatus.NEW) else []
            rows = [session_row(t) for t in processed + unprocessed]
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return
    columns = ("id", "title", "status", "title_score", "description_score",
               "key_takeaways_score", "given_before_score", "evaluation_score_total")
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(_format_scalar(row[col]) for col in columns))
    console.print(Panel(table, title=f"sessions ({len(rows)})", border_style="cyan"))


@app.command("speakers")
def speakers_command(ctx: typer.Context) -> None:
    """List every speaker with the sessions they submitted."""
    _open_db(ctx)
    try:
        with session_scope() as session:
            counts = store.aggregate_stats(session)["speakers"]
            speakers = [speaker_summary(s) for s in store.get_all_speakers(session)]
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    if _wants_json(ctx):
        typer.echo(json.dumps({"stats": counts, "speakers": speakers}, indent=2, ensure_ascii=False))
        return
    _print("speakers", counts, ctx)
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in ("name", "id", "tagline", "top", "sessions"):
        table.add_column(col)
    for sp in speakers:
        titles = ", ".join(str(s.get("name", s.get("id", ""))) for s in sp["sessions"] if isinstance(s, dict))
        table.add_row(
            sp["full_name"], sp["id"], sp["tag_line"], "yes" if sp["is_top_speaker"] else "no",
            f"{len(sp['sessions'])}: {titles}" if sp["sessions"] else "0",
        )
    console.print(Panel(table, title=f"speakers ({len(speakers)})", border_style="cyan"))


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show session, speaker and evaluation counts and averages."""
    _open_db(ctx)
    try:
        with session_scope() as session:
            stats = store.aggregate_stats(session)
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    if _wants_json(ctx):
        _print("stats", stats, ctx)
        return
    for section, values in stats.items():
        _print(f"stats · {section}", values, ctx)


@app.command("speaker-evaluation")
def speaker_evaluation_command(
    ctx: typer.Context,
    speaker_id: str = typer.Argument(..., help="Speaker id."),
    history: bool = typer.Option(False, "--history", help="Show every evaluation, newest first."),
) -> None:
    """Show a speaker's current evaluation, or the full history."""
    _open_db(ctx)
    try:
        with session_scope() as session:
            found = store.get_speaker_evaluation(session, speaker_id, latest=not history)
    except PersistenceError as exc:
        raise _fail(str(exc), 1) from exc

    if found is None:
        raise _fail(f"No evaluations for speaker {speaker_id}", 1)

    if not history:
        _print(f"speaker {speaker_id}", evaluation_summary(found), ctx)
        return

    rows = [evaluation_summary(ev) for ev in found]
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in ("id", "created_at", "expertise_match", "topics_relevance", "profile_url"):
        table.add_column(col)
    for row in rows:
        table.add_row(*(_format_scalar(row[col]) for col in ("id", "created_at", "expertise_match", "topics_relevance", "profile_url")))
    console.print(Panel(table, title=f"speaker {speaker_id} · history", border_style="cyan"))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
