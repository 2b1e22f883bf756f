"""Controllers for otp-relay CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from otp_relay.alerts import TelegramNotifier
from otp_relay.config import Settings
from otp_relay.control import ControlSignal, FileControlChannel
from otp_relay.errors import FatalInitError, JobNotFoundError
from otp_relay.jobs.models import JobCreate, JobQuery, JobStatus, JobView
from otp_relay.jobs.repository import JobRepository
from otp_relay.otp import OtpService
from otp_relay.scheduling import Scheduler
from otp_relay.storage.common import utc_now
from otp_relay.transport.base import load_transport
from otp_relay.transport.connection import ConnectionManager
from otp_relay.transport.status import ServiceStatusRepository
from otp_relay.worker import DeliveryWorker


@dataclass(slots=True)
class OtpRequestCommand:
    """CLI input for a passcode request."""

    db_path: Path | None
    phone: str


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for enqueuing a pre-composed message."""

    db_path: Path | None
    recipient: str
    otp: str
    message: str
    expires_in_minutes: int | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    search: str | None
    page: int
    limit: int


@dataclass(slots=True)
class JobRetryCommand:
    db_path: Path | None
    job_id: int
    reset_attempts: bool = False


@dataclass(slots=True)
class JobShowCommand:
    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database location."""

    db_path: Path | None


@dataclass(slots=True)
class ServiceSignalCommand:
    db_path: Path | None
    signal: ControlSignal


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    max_idle_polls: int | None = None


class OtpRelayCliController:
    """Coordinates queue, control-channel, and worker CLI operations."""

    def request_otp(self, command: OtpRequestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            receipt = OtpService(repository, settings.otp).request_otp(command.phone)
        return [
            f"Passcode queued: job_id={receipt.job_id} otp={receipt.otp}",
            f"Expires at: {receipt.expires_at.isoformat()}",
        ]

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        expires_at = (
            utc_now() + timedelta(minutes=command.expires_in_minutes)
            if command.expires_in_minutes is not None
            else None
        )
        with _repository(settings) as repository:
            job_id = repository.enqueue(
                JobCreate(
                    recipient=command.recipient,
                    otp=command.otp,
                    message_body=command.message,
                    expires_at=expires_at,
                ),
            )
        return [f"Job enqueued: job_id={job_id} status={JobStatus.PENDING.value}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        query = JobQuery(
            status=JobStatus(command.status) if command.status else None,
            search=command.search or None,
            page=command.page,
            limit=command.limit,
        )
        with _repository(settings) as repository:
            page = repository.query_jobs(query)

        lines = [
            f"Jobs: total={page.total} page={page.page}/{page.total_pages} limit={page.limit}",
        ]
        if not page.jobs:
            lines.append("No jobs found.")
            return lines
        lines.extend(_job_line(job) for job in page.jobs)
        return lines

    def show_job(self, command: JobShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
        if job is None:
            raise JobNotFoundError(command.job_id)
        return [
            f"Job: {job.id}",
            f"Recipient: {job.recipient}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}",
            f"OTP: {job.otp}",
            f"Message: {job.message_body}",
            f"Created: {job.created_at.isoformat()}",
            f"Processed: {job.processed_at.isoformat() if job.processed_at else '-'}",
            f"Expires: {job.expires_at.isoformat() if job.expires_at else '-'}",
            f"Error: {job.error_message or '-'}",
        ]

    def retry_job(self, command: JobRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry_job(command.job_id, reset_attempts=command.reset_attempts)
        return [
            f"Job re-queued: job_id={job.id} status={job.status.value} attempts={job.attempts}",
        ]

    def stats(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.job_stats()
        lines = [f"Total jobs: {stats.total}"]
        lines.extend(f"  {status}: {count}" for status, count in stats.counts.items())
        if stats.unknown:
            lines.append(f"  unknown: {stats.unknown}")
        return lines

    def service_status(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        service_key = settings.connection.service_key
        with _status_repository(settings) as statuses:
            row = statuses.get(service_key)
        control = FileControlChannel(settings.control.signals_dir)
        pending = ", ".join(signal.value for signal in control.pending()) or "-"
        if row is None:
            return [f"Service {service_key}: no status recorded", f"Pending signals: {pending}"]
        return [
            f"Service: {row.service_key}",
            f"Status: {row.status}",
            f"Details: {row.details or '-'}",
            f"Last updated: {row.last_updated.isoformat()}",
            f"Pending signals: {pending}",
        ]

    def request_signal(self, command: ServiceSignalCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        path = FileControlChannel(settings.control.signals_dir).request(command.signal)
        return [f"Signal {command.signal.value} requested: {path}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        scheduler = Scheduler(fatal_exceptions=(FatalInitError,))
        with (
            _repository(settings) as repository,
            _status_repository(settings) as statuses,
            TelegramNotifier(settings.alerts) as notifier,
        ):
            connection = ConnectionManager(
                transport=load_transport(settings.connection.transport),
                status_repository=statuses,
                scheduler=scheduler,
                settings=settings.connection,
                notifier=notifier,
            )
            worker = DeliveryWorker(
                repository=repository,
                connection=connection,
                control=FileControlChannel(settings.control.signals_dir),
                scheduler=scheduler,
                settings=settings.worker,
            )
            summary = worker.run(max_idle_polls=command.max_idle_polls)

        return [
            "Worker summary: "
            f"cycles={summary.cycles} processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"idle_polls={summary.idle_polls} not_ready={summary.not_ready} "
            f"signals={summary.signals} errors={summary.errors} "
            f"recovered_orphans={summary.recovered_orphans}",
        ]


def _job_line(job: JobView) -> str:
    line = (
        f"#{job.id} {job.status.value:<10} attempts={job.attempts} "
        f"to={job.recipient} created={job.created_at.isoformat(timespec='seconds')}"
    )
    if job.error_message:
        line += f" error={job.error_message}"
    return line


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _status_repository(settings: Settings) -> Iterator[ServiceStatusRepository]:
    repository = ServiceStatusRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema(settings.connection.service_key)
    try:
        yield repository
    finally:
        repository.close()
