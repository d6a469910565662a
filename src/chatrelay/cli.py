"""chatrelay command line interface."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import pydantic
import typer
from loguru import logger
from pydantic import BaseModel

from chatrelay.config import Settings, load_settings
from chatrelay.delivery import SendJob
from chatrelay.errors import ChatRelayError, ValidationError
from chatrelay.hours import BusinessHoursOracle
from chatrelay.logging_utils import configure_logging
from chatrelay.recipients import normalize_recipient
from chatrelay.runtime import JobOutcome, build_runtime

app = typer.Typer(name="chatrelay", help="Resilient outbound messaging over a chat channel", add_completion=False)


class JobRecord(BaseModel):
    id: str | int
    recipient: str
    message: str

    def to_job(self) -> tuple[str, SendJob]:
        return str(self.id), SendJob(recipient_raw=self.recipient, message_body=self.message)


@app.callback()
def main(
    rich_logs: bool = typer.Option(False, "--rich-logs", help="Render logs with rich."),
    log_level: str | None = typer.Option(None, "--log-level", help="Override CHATRELAY_LOG_LEVEL."),
) -> None:
    configure_logging(profile="rich" if rich_logs else "default", level=log_level)


def read_jobs(path: Path) -> list[tuple[str, SendJob]]:
    """Parse a JSON Lines jobs file. Blank lines are skipped."""

    jobs: list[tuple[str, SendJob]] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            jobs.append(JobRecord.model_validate_json(line).to_job())
        except pydantic.ValidationError as exc:
            raise typer.BadParameter(f"{path}:{lineno}: {exc.errors()[0]['msg']}") from exc
    return jobs


def _echo_json(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, default=str))


def _settings(transport: str | None, hours_file: Path | None, message_delay: float | None = None) -> Settings:
    return load_settings(transport=transport, business_hours_path=hours_file, message_delay=message_delay)


async def _run_batch(settings: Settings, jobs: list[tuple[str, SendJob]]) -> list[JobOutcome]:
    async with build_runtime(settings) as runtime:
        return await runtime.process_jobs(jobs)


async def _serve(settings: Settings) -> None:
    async with build_runtime(settings) as runtime:
        logger.info("serve.ready status={}", runtime.status()["connection"]["session"]["state"])
        await asyncio.Event().wait()


@app.command()
def send(
    jobs_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON Lines file of send jobs."),
    transport: str | None = typer.Option(None, "--transport", help="Transport factory, 'module:attr'."),
    hours_file: Path | None = typer.Option(None, "--hours-file", help="Business hours JSON."),
    message_delay: float | None = typer.Option(None, "--message-delay", help="Seconds between dispatches."),
) -> None:
    """Send every job in JOBS_FILE and print one outcome per line."""
    jobs = read_jobs(jobs_file)
    settings = _settings(transport, hours_file, message_delay)
    try:
        outcomes = asyncio.run(_run_batch(settings, jobs))
    except ChatRelayError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc

    for outcome in outcomes:
        _echo_json(outcome.as_dict())
    if any(outcome.outcome.status == "send_error" for outcome in outcomes):
        raise typer.Exit(2)


@app.command()
def serve(
    transport: str | None = typer.Option(None, "--transport", help="Transport factory, 'module:attr'."),
    hours_file: Path | None = typer.Option(None, "--hours-file", help="Business hours JSON."),
) -> None:
    """Keep the channel connected, monitored and auto-replying until interrupted."""
    settings = _settings(transport, hours_file)
    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        typer.echo("stopped")
    except ChatRelayError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command()
def hours(
    at: datetime | None = typer.Option(None, "--at", formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d"]),
    hours_file: Path | None = typer.Option(None, "--hours-file", help="Business hours JSON."),
) -> None:
    """Show whether support is open and the reply a customer would get."""
    settings = _settings(None, hours_file)
    oracle = BusinessHoursOracle(path=settings.business_hours_path)
    status = oracle.status(at)
    status["auto_reply"] = oracle.get_auto_reply_message(at)
    _echo_json(status)


@app.command()
def normalize(number: str = typer.Argument(..., help="Phone number in any common notation.")) -> None:
    """Print the normalized recipient for NUMBER."""
    try:
        typer.echo(normalize_recipient(number))
    except ValidationError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc
