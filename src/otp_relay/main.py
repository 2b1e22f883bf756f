"""CLI entrypoint for otp-relay."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from otp_relay import __version__
from otp_relay.control import ControlSignal
from otp_relay.controllers import (
    DbCommand,
    JobEnqueueCommand,
    JobListCommand,
    JobRetryCommand,
    JobShowCommand,
    OtpRelayCliController,
    OtpRequestCommand,
    ServiceSignalCommand,
    WorkerRunCommand,
)
from otp_relay.errors import OtpRelayError
from otp_relay.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OtpRelayCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to OTP_RELAY_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="otp-relay")
def otp_relay() -> None:
    """One-time passcode delivery over a chat transport."""

    logging.basicConfig(
        level=os.getenv("OTP_RELAY_LOG_LEVEL", "INFO").strip().upper(),
        format=LOG_FORMAT,
    )


@otp_relay.group()
def otp() -> None:
    """Passcode requests."""


@otp.command("request")
@db_path_option
@click.option("--phone", required=True, help="International format, e.g. +19995550123.")
def otp_request(db_path: Path | None, phone: str) -> None:
    """Generate a passcode and queue it for delivery."""

    _run(CONTROLLER.request_otp, OtpRequestCommand(db_path=db_path, phone=phone))


@otp_relay.group()
def jobs() -> None:
    """Delivery queue administration."""


@jobs.command("enqueue")
@db_path_option
@click.option("--recipient", required=True, help="Destination phone number.")
@click.option("--otp", "otp_code", required=True, help="Passcode stored with the job.")
@click.option("--message", required=True, help="Message text to deliver.")
@click.option(
    "--expires-in-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Advisory passcode lifetime.",
)
def jobs_enqueue(
    db_path: Path | None,
    recipient: str,
    otp_code: str,
    message: str,
    expires_in_minutes: int | None,
) -> None:
    """Queue a pre-composed message."""

    _run(
        CONTROLLER.enqueue,
        JobEnqueueCommand(
            db_path=db_path,
            recipient=recipient,
            otp=otp_code,
            message=message,
            expires_in_minutes=expires_in_minutes,
        ),
    )


@jobs.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Only show jobs with this status.",
)
@click.option("--search", default=None, help="Substring match on recipient, code, message, error.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=10, show_default=True)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    search: str | None,
    page: int,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _run(
        CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            status=status.lower() if status else None,
            search=search,
            page=page,
            limit=limit,
        ),
    )


@jobs.command("show")
@db_path_option
@click.option("--job-id", type=int, required=True)
def jobs_show(db_path: Path | None, job_id: int) -> None:
    """Show one job in detail."""

    _run(CONTROLLER.show_job, JobShowCommand(db_path=db_path, job_id=job_id))


@jobs.command("retry")
@db_path_option
@click.option("--job-id", type=int, required=True)
@click.option(
    "--reset-attempts/--keep-attempts",
    default=False,
    show_default=True,
    help="Also reset the attempt counter to zero.",
)
def jobs_retry(db_path: Path | None, job_id: int, reset_attempts: bool) -> None:
    """Return a failed job to the pending pool."""

    _run(
        CONTROLLER.retry_job,
        JobRetryCommand(db_path=db_path, job_id=job_id, reset_attempts=reset_attempts),
    )


@jobs.command("stats")
@db_path_option
def jobs_stats(db_path: Path | None) -> None:
    """Count jobs per status."""

    _run(CONTROLLER.stats, DbCommand(db_path=db_path))


@otp_relay.group()
def service() -> None:
    """Transport connection status and control signals."""


@service.command("status")
@db_path_option
def service_status(db_path: Path | None) -> None:
    """Show the persisted connection status."""

    _run(CONTROLLER.service_status, DbCommand(db_path=db_path))


@service.command("reinitialize")
@db_path_option
def service_reinitialize(db_path: Path | None) -> None:
    """Ask the worker to reconnect with the stored session."""

    _run(
        CONTROLLER.request_signal,
        ServiceSignalCommand(db_path=db_path, signal=ControlSignal.REINITIALIZE),
    )


@service.command("logout")
@db_path_option
def service_logout(db_path: Path | None) -> None:
    """Ask the worker to log out, delete the session, and pair again."""

    _run(
        CONTROLLER.request_signal,
        ServiceSignalCommand(db_path=db_path, signal=ControlSignal.LOGOUT),
    )


@otp_relay.group()
def worker() -> None:
    """Delivery worker."""


@worker.command("run")
@db_path_option
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: run until interrupted).",
)
def worker_run(db_path: Path | None, max_idle_polls: int | None) -> None:
    """Connect the transport and deliver queued jobs until stopped."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(db_path=db_path, max_idle_polls=max_idle_polls),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (OtpRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    otp_relay()
