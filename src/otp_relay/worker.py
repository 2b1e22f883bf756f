"""Delivery worker: drains the job queue through the transport connection."""

from __future__ import annotations

import logging
import random
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from otp_relay.config import WorkerSettings
from otp_relay.control import ControlSignal, FileControlChannel
from otp_relay.errors import FatalInitError
from otp_relay.jobs.models import JobStatus, JobView
from otp_relay.jobs.repository import JobRepository
from otp_relay.scheduling import ScheduledCall, Scheduler
from otp_relay.transport.connection import ConnectionManager

logger = logging.getLogger(__name__)

ORPHANED_JOB_REASON = "Worker stopped while the job was processing"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    cycles: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0
    not_ready: int = 0
    signals: int = 0
    errors: int = 0
    recovered_orphans: int = 0


class DeliveryWorker:
    """Runs one delivery cycle at a time on the scheduler.

    A cycle services control signals, checks readiness, then claims at most
    one job. The next cycle is scheduled only when the current one, including
    its send delay, has finished.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        connection: ConnectionManager,
        control: FileControlChannel,
        scheduler: Scheduler,
        settings: WorkerSettings,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.connection = connection
        self.control = control
        self.scheduler = scheduler
        self.settings = settings
        self.summary = WorkerRunSummary()
        self._random = rng or random.Random()  # noqa: S311
        self._next_cycle: ScheduledCall | None = None
        self._delivery_call: ScheduledCall | None = None
        self._in_flight_job_id: int | None = None
        self._stop_requested = False
        self._burst = 0
        self._idle_streak = 0
        self._max_idle_polls: int | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def in_flight_job_id(self) -> int | None:
        return self._in_flight_job_id

    def start(self, *, max_idle_polls: int | None = None) -> None:
        """Recover orphans, bring up the transport, and schedule the first cycle.

        Raises:
            FatalInitError: the transport cannot be initialized at all.
        """

        self._max_idle_polls = max_idle_polls
        self._stop_requested = False
        self.summary.recovered_orphans = self.repository.fail_orphaned_jobs(
            reason=ORPHANED_JOB_REASON,
        )
        self.connection.initialize()
        self._schedule_cycle(0.0)
        logger.info("Delivery worker started")

    def run(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Block on the scheduler until stopped by a signal or the idle limit."""

        with self._signal_handlers():
            try:
                self.start(max_idle_polls=max_idle_polls)
                self.scheduler.run_forever()
            finally:
                self.connection.shutdown()
        logger.info("Delivery worker stopped: %s", self.summary)
        return self.summary

    def request_stop(self, *, reason: str = "requested") -> None:
        """Stop scheduling cycles; a job already claimed is still delivered."""

        if self._stop_requested:
            return
        self._stop_requested = True
        if self._next_cycle is not None:
            self._next_cycle.cancel()
            self._next_cycle = None
        if self._in_flight_job_id is None:
            logger.info("Worker stop (%s)", reason)
            self.scheduler.stop()
        else:
            logger.info(
                "Worker stop (%s) deferred until job %s finishes",
                reason,
                self._in_flight_job_id,
            )

    def _schedule_cycle(self, delay: float) -> None:
        if self._stop_requested:
            return
        self._next_cycle = self.scheduler.call_later(delay, self._cycle)

    def _error_delay(self) -> float:
        return self.settings.poll_interval_seconds * self.settings.error_delay_multiplier

    def _cycle(self) -> None:
        self._next_cycle = None
        if self._stop_requested:
            return
        self.summary.cycles += 1
        try:
            delay = self._run_cycle()
        except FatalInitError:
            raise
        except Exception:
            self.summary.errors += 1
            logger.exception("Unexpected error in delivery cycle")
            delay = self._error_delay()
        if delay is not None:
            self._schedule_cycle(delay)

    def _run_cycle(self) -> float | None:
        """Return the delay before the next cycle, or None when a delivery owns it."""

        pending_signal = self.control.consume_next()
        if pending_signal is not None:
            self.summary.signals += 1
            self._burst = 0
            self._apply_signal(pending_signal)
            return self.settings.signal_settle_seconds

        if not self.connection.is_ready:
            self.summary.not_ready += 1
            self._burst = 0
            logger.info(
                "Transport not ready (%s); checking again in %ss",
                self.connection.state.value,
                self.settings.ready_check_interval_seconds,
            )
            return self.settings.ready_check_interval_seconds

        job = self.repository.claim_next()
        if job is None:
            self.summary.idle_polls += 1
            self._burst = 0
            self._idle_streak += 1
            if self._max_idle_polls is not None and self._idle_streak >= self._max_idle_polls:
                self.request_stop(reason=f"{self._idle_streak} consecutive idle polls")
                return None
            return self.settings.poll_interval_seconds

        self._idle_streak = 0
        self._in_flight_job_id = job.id
        send_delay = self._random.uniform(
            self.settings.min_send_delay_seconds,
            self.settings.max_send_delay_seconds,
        )
        logger.info(
            "Job %s for %s (attempt %s) will be sent in %.1fs",
            job.id,
            job.recipient,
            job.attempts,
            send_delay,
        )
        self._delivery_call = self.scheduler.call_later(send_delay, self._deliver, job)
        return None

    def _apply_signal(self, pending_signal: ControlSignal) -> None:
        if pending_signal == ControlSignal.LOGOUT:
            logger.warning("Logout signal received: clearing transport session")
            self.connection.clear_session_and_restart(reconnect=True)
        else:
            logger.info("Reinitialize signal received: restarting transport connection")
            self.connection.initialize()

    def _deliver(self, job: JobView) -> None:
        self._delivery_call = None
        self.summary.processed += 1
        try:
            delay = self._deliver_job(job)
        except Exception:
            self.summary.errors += 1
            logger.exception("Unexpected error while finishing job %s", job.id)
            delay = self._error_delay()
        finally:
            self._in_flight_job_id = None

        if self._stop_requested:
            logger.info("Worker stop completed after job %s", job.id)
            self.scheduler.stop()
            return
        self._schedule_cycle(delay)

    def _deliver_job(self, job: JobView) -> float:
        try:
            self.connection.send(job.recipient, job.message_body)
        except Exception as error:  # noqa: BLE001
            reason = str(error) or type(error).__name__
            logger.error("Job %s delivery failed: %s", job.id, reason)
            self.repository.set_status(job.id, JobStatus.FAILED, reason)
            self.summary.failed += 1
            self._burst = 0
            return self.settings.poll_interval_seconds

        self.repository.set_status(job.id, JobStatus.SENT)
        self.summary.succeeded += 1
        self._burst += 1
        if self._burst >= self.settings.max_burst:
            logger.info(
                "%s jobs sent back-to-back; pausing %ss before the next claim",
                self._burst,
                self.settings.poll_interval_seconds,
            )
            self._burst = 0
            return self.settings.poll_interval_seconds
        return 0.0

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
