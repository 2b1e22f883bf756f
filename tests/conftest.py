"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from otp_relay.config import ConnectionSettings, WorkerSettings
from otp_relay.errors import ConnectionLifecycleError, FatalInitError, TransportSendError
from otp_relay.jobs.repository import JobRepository
from otp_relay.scheduling import Scheduler
from otp_relay.transport.connection import ConnectionManager
from otp_relay.transport.status import ServiceStatusRepository

SERVICE_KEY = "test_transport"


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeHandle:
    def __init__(self, transport: FakeTransport, session_dir: Path) -> None:
        self.transport = transport
        self.session_dir = session_dir
        self.sent: list[tuple[str, str]] = []
        self.logged_out = False
        self.closed = False

    def send_text(self, address: str, text: str) -> str | None:
        if self.transport.send_error is not None:
            raise self.transport.send_error
        self.sent.append((address, text))
        self.transport.sent.append((address, text))
        return f"msg-{len(self.transport.sent)}"

    def logout(self) -> None:
        self.logged_out = True

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Transport double; tests fire lifecycle events through ``listener``."""

    def __init__(self) -> None:
        self.auto_open = True
        self.open_error: Exception | None = None
        self.send_error: Exception | None = None
        self.handles: list[FakeHandle] = []
        self.listeners: list[object] = []
        self.sent: list[tuple[str, str]] = []

    @property
    def open_count(self) -> int:
        return len(self.listeners)

    @property
    def listener(self):
        return self.listeners[-1]

    def open(self, session_dir: Path, listener) -> FakeHandle:
        self.listeners.append(listener)
        if self.open_error is not None:
            raise self.open_error
        (session_dir / "creds.json").write_text("{}", encoding="utf-8")
        handle = FakeHandle(self, session_dir)
        self.handles.append(handle)
        if self.auto_open:
            listener.on_open()
        return handle

    def close_current(self, status_code: int | None, message: str = "closed") -> None:
        self.listener.on_close(ConnectionLifecycleError(message, status_code=status_code))

    def fail_sends(self, message: str = "transport rejected") -> None:
        self.send_error = TransportSendError(message)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def send(self, text: str) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scheduler(clock: ManualClock) -> Scheduler:
    return Scheduler(clock=clock, fatal_exceptions=(FatalInitError,))


@pytest.fixture()
def drive(clock: ManualClock, scheduler: Scheduler) -> Callable[[float], None]:
    """Advance the manual clock by ``seconds``, firing timers in deadline order."""

    def _drive(seconds: float = 0.0) -> None:
        target = clock.now + seconds
        scheduler.run_pending()
        while True:
            deadline = scheduler.next_deadline()
            if deadline is None or deadline > target:
                break
            clock.now = max(clock.now, deadline)
            scheduler.run_pending()
        clock.now = target
        scheduler.run_pending()

    return _drive


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "otp-relay.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def status_repository(db_path: Path) -> Iterator[ServiceStatusRepository]:
    repository = ServiceStatusRepository(db_path)
    repository.init_schema(SERVICE_KEY)
    yield repository
    repository.close()


@pytest.fixture()
def connection_settings(tmp_path: Path) -> ConnectionSettings:
    return ConnectionSettings(
        service_key=SERVICE_KEY,
        session_dir=tmp_path / "session",
        max_retries=3,
        initial_retry_delay_seconds=4.0,
        retry_multiplier=2.0,
        max_retry_delay_seconds=20.0,
        major_reconnect_cooldown_seconds=3_600.0,
        major_reconnect_delay_factor=3.0,
    )


@pytest.fixture()
def worker_settings() -> WorkerSettings:
    return WorkerSettings(
        poll_interval_seconds=5.0,
        ready_check_interval_seconds=10.0,
        min_send_delay_seconds=1.0,
        max_send_delay_seconds=1.0,
        error_delay_multiplier=2.0,
        signal_settle_seconds=10.0,
        max_burst=3,
    )


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def connection(
    fake_transport: FakeTransport,
    status_repository: ServiceStatusRepository,
    scheduler: Scheduler,
    connection_settings: ConnectionSettings,
    notifier: RecordingNotifier,
) -> ConnectionManager:
    return ConnectionManager(
        transport=fake_transport,
        status_repository=status_repository,
        scheduler=scheduler,
        settings=connection_settings,
        notifier=notifier,
    )


@pytest.fixture()
def status_row(status_repository: ServiceStatusRepository):
    """Return a callable reading the current service status row."""

    def _read():
        row = status_repository.get(SERVICE_KEY)
        assert row is not None
        return row

    return _read
