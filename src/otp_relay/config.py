"""Runtime configuration for the queue, worker, and transport connection."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TRANSPORT = "otp_relay.transport.loopback:LoopbackTransport"


@dataclass(slots=True)
class WorkerSettings:
    """Delivery loop cadence."""

    poll_interval_seconds: float = 5.0
    ready_check_interval_seconds: float = 10.0
    min_send_delay_seconds: float = 5.0
    max_send_delay_seconds: float = 20.0
    error_delay_multiplier: float = 2.0
    signal_settle_seconds: float = 10.0
    max_burst: int = 20


@dataclass(slots=True)
class ConnectionSettings:
    """Transport session and reconnect policy."""

    service_key: str = "transport_connection"
    session_dir: Path = Path(".otp_relay/session")
    max_retries: int = 5
    initial_retry_delay_seconds: float = 7.0
    retry_multiplier: float = 1.5
    max_retry_delay_seconds: float = 60.0
    major_reconnect_cooldown_seconds: float = 10_800.0
    major_reconnect_delay_factor: float = 3.0
    address_suffix: str = "@s.whatsapp.net"
    transport: str = DEFAULT_TRANSPORT


@dataclass(slots=True)
class ControlSettings:
    """Out-of-band control signal location."""

    signals_dir: Path = Path(".otp_relay/signals")


@dataclass(slots=True)
class AlertSettings:
    """Operator alert channel."""

    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class OtpSettings:
    """Passcode composition."""

    length: int = 4
    lifetime_minutes: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".otp_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    control: ControlSettings = field(default_factory=ControlSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    otp: OtpSettings = field(default_factory=OtpSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("OTP_RELAY_DB_PATH", ".otp_relay.db")),
            sqlite_busy_timeout_ms=_env_int("OTP_RELAY_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("OTP_RELAY_LOG_LEVEL", "INFO").strip().upper(),
            worker=WorkerSettings(
                poll_interval_seconds=_env_float("OTP_RELAY_WORKER_POLL_INTERVAL_SECONDS", 5.0),
                ready_check_interval_seconds=_env_float(
                    "OTP_RELAY_WORKER_READY_CHECK_INTERVAL_SECONDS",
                    10.0,
                ),
                min_send_delay_seconds=_env_float("OTP_RELAY_WORKER_MIN_SEND_DELAY_SECONDS", 5.0),
                max_send_delay_seconds=_env_float(
                    "OTP_RELAY_WORKER_MAX_SEND_DELAY_SECONDS",
                    20.0,
                ),
                error_delay_multiplier=_env_float(
                    "OTP_RELAY_WORKER_ERROR_DELAY_MULTIPLIER",
                    2.0,
                ),
                signal_settle_seconds=_env_float("OTP_RELAY_WORKER_SIGNAL_SETTLE_SECONDS", 10.0),
                max_burst=_env_int("OTP_RELAY_WORKER_MAX_BURST", 20),
            ),
            connection=ConnectionSettings(
                service_key=os.getenv("OTP_RELAY_SERVICE_KEY", "transport_connection"),
                session_dir=Path(os.getenv("OTP_RELAY_SESSION_DIR", ".otp_relay/session")),
                max_retries=_env_int("OTP_RELAY_MAX_RETRIES", 5),
                initial_retry_delay_seconds=_env_float(
                    "OTP_RELAY_INITIAL_RETRY_DELAY_SECONDS",
                    7.0,
                ),
                retry_multiplier=_env_float("OTP_RELAY_RETRY_MULTIPLIER", 1.5),
                max_retry_delay_seconds=_env_float("OTP_RELAY_MAX_RETRY_DELAY_SECONDS", 60.0),
                major_reconnect_cooldown_seconds=_env_float(
                    "OTP_RELAY_MAJOR_RECONNECT_COOLDOWN_SECONDS",
                    10_800.0,
                ),
                major_reconnect_delay_factor=_env_float(
                    "OTP_RELAY_MAJOR_RECONNECT_DELAY_FACTOR",
                    3.0,
                ),
                address_suffix=os.getenv("OTP_RELAY_ADDRESS_SUFFIX", "@s.whatsapp.net"),
                transport=os.getenv("OTP_RELAY_TRANSPORT", DEFAULT_TRANSPORT),
            ),
            control=ControlSettings(
                signals_dir=Path(os.getenv("OTP_RELAY_SIGNALS_DIR", ".otp_relay/signals")),
            ),
            alerts=AlertSettings(
                telegram_bot_token=os.getenv("OTP_RELAY_TELEGRAM_BOT_TOKEN") or None,
                telegram_chat_id=os.getenv("OTP_RELAY_TELEGRAM_CHAT_ID") or None,
                telegram_api_base=os.getenv(
                    "OTP_RELAY_TELEGRAM_API_BASE",
                    "https://api.telegram.org",
                ),
                timeout_seconds=_env_float("OTP_RELAY_ALERT_TIMEOUT_SECONDS", 10.0),
            ),
            otp=OtpSettings(
                length=_env_int("OTP_RELAY_OTP_LENGTH", 4),
                lifetime_minutes=_env_int("OTP_RELAY_OTP_LIFETIME_MINUTES", 5),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        worker = self.worker
        if worker.poll_interval_seconds <= 0:
            raise ValueError("OTP_RELAY_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if worker.ready_check_interval_seconds <= 0:
            raise ValueError("OTP_RELAY_WORKER_READY_CHECK_INTERVAL_SECONDS must be > 0.")
        if worker.min_send_delay_seconds < 0:
            raise ValueError("OTP_RELAY_WORKER_MIN_SEND_DELAY_SECONDS must be >= 0.")
        if worker.min_send_delay_seconds > worker.max_send_delay_seconds:
            raise ValueError(
                "OTP_RELAY_WORKER_MIN_SEND_DELAY_SECONDS must not exceed "
                "OTP_RELAY_WORKER_MAX_SEND_DELAY_SECONDS.",
            )
        if worker.error_delay_multiplier < 1:
            raise ValueError("OTP_RELAY_WORKER_ERROR_DELAY_MULTIPLIER must be >= 1.")
        if worker.max_burst <= 0:
            raise ValueError("OTP_RELAY_WORKER_MAX_BURST must be a positive integer.")

        connection = self.connection
        if connection.max_retries < 0:
            raise ValueError("OTP_RELAY_MAX_RETRIES must be >= 0.")
        if connection.initial_retry_delay_seconds <= 0:
            raise ValueError("OTP_RELAY_INITIAL_RETRY_DELAY_SECONDS must be > 0.")
        if connection.retry_multiplier < 1:
            raise ValueError("OTP_RELAY_RETRY_MULTIPLIER must be >= 1.")
        if connection.max_retry_delay_seconds < connection.initial_retry_delay_seconds:
            raise ValueError(
                "OTP_RELAY_MAX_RETRY_DELAY_SECONDS must be >= "
                "OTP_RELAY_INITIAL_RETRY_DELAY_SECONDS.",
            )
        if ":" not in connection.transport:
            raise ValueError(
                f"Invalid OTP_RELAY_TRANSPORT: {connection.transport!r}. "
                "Expected format '<module>:<attribute>'.",
            )

        if self.otp.length <= 0:
            raise ValueError("OTP_RELAY_OTP_LENGTH must be a positive integer.")
        if self.otp.lifetime_minutes <= 0:
            raise ValueError("OTP_RELAY_OTP_LIFETIME_MINUTES must be a positive integer.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error
