"""
BookMail CLI - Command line interface for the delivery engine.

Usage:
    bookmail --help                         Show all commands
    bookmail run                            Deliver the lessons due now
    bookmail run --at 2026-03-09T14:00:00Z  Evaluate eligibility at a given instant
    bookmail run --simulate                 Preview without sending
    bookmail retry LOG_ID [LOG_ID...]       Retry failed deliveries
    bookmail to-utc 09:00 Europe/London     Preview a local delivery time in UTC
    bookmail serve                          Run the API with the in-process scheduler
"""

import asyncio
from datetime import date, datetime

import typer

from bookmail.core.errors import BookMailError

app = typer.Typer(
    name="bookmail",
    help="BookMail CLI - lesson delivery scheduler",
    no_args_is_help=True,
)


# --- Output helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _parse_instant(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid ISO datetime: {value}") from e


async def _run(check_instant: datetime | None, simulate: bool) -> dict:
    from bookmail.config import get_config, get_settings
    from bookmail.core.database import AsyncSessionLocal
    from bookmail.models.scheduler_run import TriggerSource
    from bookmail.services.email_service import ResendEmailSender
    from bookmail.services.scheduler_run import build_runner

    config = get_config()
    sender = ResendEmailSender.from_settings(get_settings(), config)
    async with AsyncSessionLocal() as db:
        runner = build_runner(db, sender, config)
        summary = await runner.run(
            trigger_source=TriggerSource.CLI,
            check_instant=check_instant,
            simulate=simulate,
        )
    return summary.to_dict()


async def _retry(log_ids: list[str]) -> dict:
    from bookmail.config import get_config, get_settings
    from bookmail.core.database import AsyncSessionLocal
    from bookmail.services.email_service import ResendEmailSender
    from bookmail.services.retry import build_retry_coordinator

    config = get_config()
    sender = ResendEmailSender.from_settings(get_settings(), config)
    async with AsyncSessionLocal() as db:
        summary = await build_retry_coordinator(db, sender, config).retry(log_ids)
    return summary.to_dict()


@app.command()
def run(
    at: str | None = typer.Option(None, "--at", help="ISO instant to evaluate (default: now)"),
    simulate: bool = typer.Option(False, "--simulate", "-n", help="Preview without sending"),
):
    """Run one delivery pass."""
    from bookmail.core.logging import setup_logging

    setup_logging()
    check_instant = _parse_instant(at)

    try:
        summary = asyncio.run(_run(check_instant, simulate))
    except BookMailError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e

    typer.echo(
        f"\nRun {summary['run_id']} ({summary['status']}) at {summary['timestamp']}: "
        f"{summary['total_eligible']} eligible"
    )
    for result in summary["results"]:
        line = f"{result['action']:<11} {result['user_email']} - {result['book_title']}"
        if result["progress"]:
            line += f" [{result['progress']}]"
        if result["error"]:
            line += f" ({result['error']})"
        typer.echo(f"  {line}")

    if summary["errors"]:
        _print_warning(f"{summary['errors']} error(s), {summary['sent']} sent")
    else:
        _print_success(f"{summary['sent']} sent in {summary['execution_time_ms']}ms")


@app.command()
def retry(log_ids: list[str] = typer.Argument(..., help="Failed delivery log ids")):
    """Retry failed deliveries."""
    from bookmail.core.logging import setup_logging

    setup_logging()
    summary = asyncio.run(_retry(log_ids))

    if not summary["attempted"]:
        _print_warning("No failed deliveries matched the given ids")
        return

    for result in summary["results"]:
        status = "✅" if result["status"] == "success" else "❌"
        typer.echo(
            f"  {status} {result['original_log_id']} {result['user_email']} "
            f"day {result['lesson_day']} {result['error'] or ''}".rstrip()
        )
    typer.echo(f"\n{summary['successful']}/{summary['attempted']} retried successfully")
    if summary["failed"]:
        raise typer.Exit(1)


@app.command("to-utc")
def to_utc_command(
    local_time: str = typer.Argument(..., help="Local time, HH:MM"),
    timezone: str = typer.Argument(..., help="IANA timezone, e.g. Europe/London"),
    on_date: str | None = typer.Option(None, "--date", "-d", help="Local date, YYYY-MM-DD (default: today)"),
):
    """Show the UTC instant of a local delivery time."""
    from bookmail.core.timeconv import offset_minutes, to_utc

    try:
        parsed_date = date.fromisoformat(on_date) if on_date else None
    except ValueError as e:
        raise typer.BadParameter(f"Invalid date: {on_date}") from e

    try:
        instant = to_utc(local_time, timezone, parsed_date)
    except BookMailError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e

    offset = offset_minutes(timezone, instant)
    sign = "+" if offset >= 0 else "-"
    typer.echo(
        f"{local_time} {timezone} = {instant.isoformat()}Z "
        f"(UTC{sign}{abs(offset) // 60:02d}:{abs(offset) % 60:02d})"
    )


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the API server (with the in-process delivery scheduler)."""
    import uvicorn

    uvicorn.run("bookmail.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
