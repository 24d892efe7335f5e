"""
Bundleflow - Operator Console

    bundleflow init-db
    bundleflow worker {intake|validate|import}
    bundleflow intake NAME [--email ADDR]
    bundleflow enqueue NAME [--email ADDR]
    bundleflow status BATCH_ID
    bundleflow redrive BATCH_ID FILE_NAME

Settings come from the environment; --env-file (default .env) is loaded
first with python-dotenv without overriding variables already set.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, NoReturn, Optional, Sequence

import typer
from dotenv import load_dotenv

from bundleflow.core.config import Settings, get_settings
from bundleflow.core.db import EXIT_CODE_DB_UNAVAILABLE
from bundleflow.core.errors import ERR_DB_CONNECTION, BundleflowError
from bundleflow.core.logging import configure_worker_logging
from bundleflow.ingest.intake import IntakeDetector
from bundleflow.ledger.schema import init_schema
from bundleflow.storage.object_store import FILE_LOCATIONS, Location
from bundleflow.workers.envelope import FileEnvelope
from bundleflow.workers.wiring import build_components, build_connect

app = typer.Typer(help="Bundleflow spreadsheet bundle pipeline console.", no_args_is_help=True)

BATCH_COLUMNS = [
    "batch_id",
    "origin_file_name",
    "created_at",
    "retry_count",
    "total_entries",
    "remaining_entries",
]
ENTRY_COLUMNS = ["file_name", "extracted", "finished", "outcome", "error_message", "finished_at"]


class WorkerKind(str, Enum):
    intake = "intake"
    validate = "validate"
    import_ = "import"


# =============================================================================
# Output helpers
# =============================================================================


def _format_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat(sep=" ")
    return str(value)


def _print_table(title: str, columns: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> None:
    typer.echo(f"[bundleflow] {title}")
    if not rows:
        typer.echo("  (no rows)")
        return

    widths: dict[str, int] = {
        column: max(len(column), *(len(_format_value(row.get(column))) for row in rows))
        for column in columns
    }
    header = "  " + "  ".join(f"{column.upper():{widths[column]}}" for column in columns)
    ruler = "  " + "  ".join("-" * widths[column] for column in columns)
    typer.echo(header)
    typer.echo(ruler)
    for row in rows:
        typer.echo("  " + "  ".join(f"{_format_value(row.get(column)):{widths[column]}}" for column in columns))


def _fail(message: str, code: int = 1) -> NoReturn:
    typer.secho(f"[bundleflow] {message}", err=True, fg=typer.colors.RED)
    raise typer.Exit(code)


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _components(ctx: typer.Context, worker_type: str) -> dict[str, Any]:
    try:
        return build_components(_settings(ctx), worker_type)
    except BundleflowError as e:
        _fail(str(e))


# =============================================================================
# Commands
# =============================================================================


@app.callback()
def main(
    ctx: typer.Context,
    env_file: Path = typer.Option(Path(".env"), "--env-file", help="dotenv file loaded before settings"),
) -> None:
    if env_file.is_file():
        load_dotenv(env_file, override=False)
    settings = get_settings()
    configure_worker_logging("bundleflow.cli", settings.LOG_LEVEL, settings.LOG_JSON)
    ctx.obj = {"settings": settings}


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create the intake schema and the pgmq queues."""
    settings = _settings(ctx)
    if not settings.DATABASE_URL:
        _fail("DATABASE_URL is not configured")
    try:
        init_schema(build_connect(settings, "cli"), settings)
    except BundleflowError as e:
        _fail(str(e), EXIT_CODE_DB_UNAVAILABLE if e.error_code is ERR_DB_CONNECTION else 1)
    typer.echo("[bundleflow] ledger schema and queues are ready")


@app.command()
def worker(ctx: typer.Context, kind: WorkerKind = typer.Argument(..., help="Stage to run")) -> None:
    """Run a worker loop until SIGTERM/SIGINT."""
    from bundleflow.workers.import_worker import ImportWorker
    from bundleflow.workers.intake_worker import IntakeWorker
    from bundleflow.workers.validate_worker import ValidateWorker

    worker_cls = {
        WorkerKind.intake: IntakeWorker,
        WorkerKind.validate: ValidateWorker,
        WorkerKind.import_: ImportWorker,
    }[kind]
    try:
        instance = worker_cls.from_settings(_settings(ctx))
    except BundleflowError as e:
        _fail(str(e))
    raise typer.Exit(instance.run())


@app.command()
def intake(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Object name in incoming/"),
    email: Optional[str] = typer.Option(None, "--email", help="Notification recipient"),
) -> None:
    """Run the Intake Detector on incoming/NAME directly."""
    components = _components(ctx, "cli")
    detector = IntakeDetector(_settings(ctx), components["ledger"], components["store"], components["queue"])
    report = detector.handle(name, email)
    typer.echo(
        f"[bundleflow] {report.name}: {report.status.value} batch={report.batch_id or '-'} "
        f"retry_count={report.retry_count} emitted={len(report.emitted)} failed={len(report.failed)}"
    )
    for member, reason in report.failed.items():
        typer.echo(f"  {member}: {reason}")
    if report.failed:
        raise typer.Exit(1)


@app.command()
def enqueue(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Object name in incoming/"),
    email: Optional[str] = typer.Option(None, "--email", help="Notification recipient"),
) -> None:
    """Announce an arrived bundle on the intake queue."""
    settings = _settings(ctx)
    queue = _components(ctx, "cli")["queue"]
    msg_id = queue.send(settings.INTAKE_QUEUE, {"name": name, "notification_email": email})
    typer.echo(f"[bundleflow] queued {name} on {settings.INTAKE_QUEUE} msg_id={msg_id}")


@app.command()
def status(ctx: typer.Context, batch_id: str = typer.Argument(...)) -> None:
    """Print a batch and its file entries."""
    ledger = _components(ctx, "cli")["ledger"]
    batch = ledger.get_batch(batch_id)
    if batch is None:
        _fail(f"batch {batch_id} not found")
    _print_table("batch", BATCH_COLUMNS, [dataclasses.asdict(batch)])
    entries = [dataclasses.asdict(e) for e in ledger.list_entries(batch_id)]
    _print_table("entries", ENTRY_COLUMNS, entries)


@app.command()
def redrive(
    ctx: typer.Context,
    batch_id: str = typer.Argument(...),
    file_name: str = typer.Argument(...),
    email: Optional[str] = typer.Option(None, "--email", help="Notification recipient"),
) -> None:
    """Move an unfinished entry's object back to processing/ and re-enqueue it."""
    settings = _settings(ctx)
    components = _components(ctx, "cli")
    ledger, store, queue = components["ledger"], components["store"], components["queue"]

    batch = ledger.get_batch(batch_id)
    entry = ledger.get_entry(batch_id, file_name)
    if batch is None or entry is None:
        _fail(f"no entry {file_name} in batch {batch_id}")
    if entry.finished:
        _fail(f"{file_name} is already {entry.outcome.value}; use a rerun upload instead")

    location = store.locate(file_name, FILE_LOCATIONS)
    if location is None:
        _fail(f"{file_name} is not in any pipeline location")
    if location is not Location.PROCESSING:
        store.move(location, file_name, Location.PROCESSING)

    envelope = FileEnvelope.create(
        file_name,
        batch_id,
        retry_count=batch.retry_count,
        notification_email=email,
    )
    msg_id = queue.send(settings.STAGE1_QUEUE, envelope.encode())
    typer.echo(
        f"[bundleflow] re-drove {file_name} from {location.value}/ to {settings.STAGE1_QUEUE} msg_id={msg_id}"
    )


def run() -> None:
    app()


if __name__ == "__main__":
    run()
