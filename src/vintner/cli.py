"""
Vintner CLI

Commands:
- health: Check the remote stage service
- status: Show whether the storage account is linked
- refresh-catalog: Reload the backend's catalog snapshot
- run: Upload label images, OCR and match them, optionally publish, export CSV
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer

from vintner.config import Settings, get_settings
from vintner.pipeline.export import DEFAULT_EXPORT_NAME, write_export
from vintner.pipeline.output import append_record, item_record
from vintner.pipeline.state import Orchestrator, estimate_seconds, format_duration
from vintner.pipeline.view import summarize
from vintner.remote.client import SourceFile, StageClient

app = typer.Typer(add_completion=False, help="Vintner label OCR tooling")


class JsonFormatter(logging.Formatter):
    """Simple JSON formatter for structured logs."""
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        # Custom attributes passed via `extra=`.
        reserved = {
            "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
            "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
            "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
            "message",
        }
        for k, v in record.__dict__.items():
            if k in reserved or k.startswith("_"):
                continue
            try:
                json.dumps(v)
                payload[k] = v
            except TypeError:
                payload[k] = repr(v)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: str) -> logging.Logger:
    logger = logging.getLogger("vintner")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger


LOGGER = logging.getLogger("vintner")


def build_settings(api_url: str | None, user_id: str | None) -> Settings:
    """Environment settings with per-invocation overrides applied."""
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if api_url:
        overrides["api_url"] = api_url.rstrip("/")
    if user_id:
        overrides["user_id"] = user_id
    return settings.model_copy(update=overrides) if overrides else settings


def read_sources(paths: list[Path]) -> list[SourceFile]:
    sources: list[SourceFile] = []
    for path in paths:
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        sources.append(SourceFile(filename=path.name, content=path.read_bytes(), content_type=content_type))
    return sources


async def _health(settings: Settings) -> str | None:
    async with StageClient(settings) as client:
        orch = Orchestrator(client, user_id=settings.user_id)
        status = await orch.check_health()
        if status is None:
            typer.echo(f"❌ Backend unavailable: {orch.batch.error}", err=True)
        return status


async def _status(settings: Settings) -> tuple[bool, str | None]:
    async with StageClient(settings) as client:
        orch = Orchestrator(client, user_id=settings.user_id)
        linked = await orch.refresh_capability()
        return linked, orch.gate.error


async def _refresh_catalog(settings: Settings) -> tuple[str | None, str | None]:
    async with StageClient(settings) as client:
        orch = Orchestrator(client, user_id=settings.user_id)
        result = await orch.refresh_catalog()
        return result, orch.batch.error


@app.command("health")
def health_cmd(
    api_url: str | None = typer.Option(None, "--api-url", help="Override VINTNER_API_URL"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
) -> None:
    """Report the advisory backend status."""
    setup_logging(log_level)
    status = asyncio.run(_health(build_settings(api_url, None)))
    if status is None:
        raise typer.Exit(code=1)
    typer.echo(f"✅ Backend status: {status}")


@app.command("status")
def status_cmd(
    api_url: str | None = typer.Option(None, "--api-url", help="Override VINTNER_API_URL"),
    user_id: str | None = typer.Option(None, "--user-id", help="Override VINTNER_USER_ID"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
) -> None:
    """Show whether the operator's storage account is linked."""
    setup_logging(log_level)
    settings = build_settings(api_url, user_id)
    linked, error = asyncio.run(_status(settings))
    if error:
        typer.echo(f"⚠️  Status check failed: {error}", err=True)
    typer.echo(f"Storage for {settings.user_id}: {'linked' if linked else 'not linked'}")
    if not linked:
        raise typer.Exit(code=1)


@app.command("refresh-catalog")
def refresh_catalog_cmd(
    api_url: str | None = typer.Option(None, "--api-url", help="Override VINTNER_API_URL"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
) -> None:
    """Ask the backend to reload its catalog snapshot."""
    setup_logging(log_level)
    result, error = asyncio.run(_refresh_catalog(build_settings(api_url, None)))
    if error:
        typer.echo(f"❌ Refresh failed: {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ {result}")


async def run_batch(settings: Settings, sources: list[SourceFile], *, publish: bool) -> Orchestrator:
    """
    Drive one batch end to end and return the orchestrator holding its state.

    Publishing is attempted only when requested and the storage account is
    linked; otherwise the batch stops after compare.
    """
    async with StageClient(settings) as client:
        orch = Orchestrator(client, user_id=settings.user_id, chunk_size=settings.publish_chunk_size)
        if publish:
            await orch.refresh_capability()

        for report in await orch.process(sources):
            typer.echo(
                f"  {report.stage}: {report.matched} matched, {report.failed} failed, "
                f"{report.unmatched} unmatched ({report.elapsed_seconds:.1f}s)"
                + (f" - {report.error}" if report.error else "")
            )

        if publish and not orch.batch.error:
            selections = orch.publishable_selections()
            if selections:
                dispatch = await orch.publish(selections)
                if dispatch is not None:
                    typer.echo(f"  publish: {dispatch.done}/{dispatch.total} published")
        return orch


@app.command("run")
def run_cmd(
    files: list[Path] = typer.Argument(..., help="Label images to process"),
    export: Path = typer.Option(Path(DEFAULT_EXPORT_NAME), "--export", help="CSV export path"),
    records: Path | None = typer.Option(None, "--records", help="Append per-item JSONL records here"),
    publish: bool = typer.Option(
        False, "--publish/--no-publish", help="Publish formatted items to storage and catalog"
    ),
    api_url: str | None = typer.Option(None, "--api-url", help="Override VINTNER_API_URL"),
    user_id: str | None = typer.Option(None, "--user-id", help="Override VINTNER_USER_ID"),
    log_level: str = typer.Option("INFO", "--log-level", help="Log level"),
) -> None:
    """
    Run one batch: upload, OCR, compare, optional publish, CSV export.

    Example:
        vintner run labels/*.jpg --export results.csv --records run.jsonl
    """
    global LOGGER
    LOGGER = setup_logging(log_level)

    paths = [p.expanduser() for p in files]
    missing = [p for p in paths if not p.is_file()]
    if missing:
        for p in missing:
            typer.echo(f"Error: File not found: {p}", err=True)
        raise typer.Exit(code=1)

    settings = build_settings(api_url, user_id)
    typer.echo(
        f"Processing {len(paths)} file(s) against {settings.api_url} "
        f"(estimated {format_duration(estimate_seconds(len(paths)))})"
    )

    orch = asyncio.run(run_batch(settings, read_sources(paths), publish=publish))
    batch = orch.batch

    export_path = write_export(batch.items, export.expanduser())
    if records is not None:
        run_id = uuid.uuid4().hex
        for item in batch.items:
            append_record(records.expanduser(), item_record(item, run_id=run_id))

    summary = summarize(batch.items)
    typer.echo(f"\n{'=' * 60}")
    typer.echo("📊 Summary:")
    typer.echo(f"  Items: {summary.total}")
    typer.echo(f"  Needs review: {summary.needs_review}")
    typer.echo(f"  Published: {summary.completed}")
    typer.echo(f"  Failed: {summary.failed}")
    typer.echo(f"  Export: {export_path}")
    if batch.message:
        typer.echo(f"  {batch.message}")

    if batch.error:
        typer.echo(f"\n❌ {batch.error}", err=True)
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
