"""Persisted, externally readable snapshot of the transport connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from otp_relay.errors import StoreError
from otp_relay.storage.alembic_runner import upgrade_head
from otp_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from otp_relay.storage.sqlmodel_models import ServiceStatusRow

logger = logging.getLogger(__name__)


class ServiceStatus(str, Enum):
    """Values written to ``service_status.status``."""

    UNKNOWN = "UNKNOWN"
    INITIALIZING = "INITIALIZING"
    SESSION_DIR_ERROR = "SESSION_DIR_ERROR"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    CONNECTING = "CONNECTING"
    PAIRING_REQUIRED = "PAIRING_REQUIRED"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"
    RECONNECTING = "RECONNECTING"
    LOGGED_OUT = "LOGGED_OUT"
    CONNECTION_REPLACED = "CONNECTION_REPLACED"
    CRITICAL_DISCONNECT = "CRITICAL_DISCONNECT"
    MAJOR_RECONNECT_ATTEMPT = "MAJOR_RECONNECT_ATTEMPT"
    CLEARING_SESSION = "CLEARING_SESSION"
    SESSION_CLEARED_AWAITING_MANUAL_INIT = "SESSION_CLEARED_AWAITING_MANUAL_INIT"
    SEND_ERROR = "SEND_ERROR"
    SEND_ERROR_NOT_READY = "SEND_ERROR_NOT_READY"


@dataclass(slots=True)
class ServiceStatusView:
    service_key: str
    status: str
    details: str | None
    last_updated: datetime


class ServiceStatusRepository:
    """Upsert-only store for the connection status row."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self, service_key: str) -> None:
        """Run schema migrations and seed the row for ``service_key``."""

        upgrade_head(self.db_path)
        self.ensure_row(service_key)

    def ensure_row(self, service_key: str) -> None:
        """Seed an ``UNKNOWN`` row when the worker has never reported."""

        try:
            with Session(self.engine) as session:
                if session.get(ServiceStatusRow, service_key) is not None:
                    return
                session.add(
                    ServiceStatusRow(
                        service_key=service_key,
                        status=ServiceStatus.UNKNOWN.value,
                        details="Not yet reported by worker",
                        last_updated=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to seed service status {service_key}: {error}") from error

    def upsert(self, service_key: str, status: ServiceStatus, details: str | None = None) -> None:
        try:
            with Session(self.engine) as session:
                row = session.get(ServiceStatusRow, service_key)
                now = to_db_datetime(utc_now())
                if row is None:
                    row = ServiceStatusRow(
                        service_key=service_key,
                        status=status.value,
                        details=details,
                        last_updated=now,
                    )
                else:
                    row.status = status.value
                    row.details = details
                    row.last_updated = now
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to update service status {service_key}: {error}") from error
        logger.debug("Service status %s -> %s (%s)", service_key, status.value, details)

    def get(self, service_key: str) -> ServiceStatusView | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(ServiceStatusRow).where(ServiceStatusRow.service_key == service_key),
                ).one_or_none()
                if row is None:
                    return None
                return ServiceStatusView(
                    service_key=row.service_key,
                    status=row.status,
                    details=row.details,
                    last_updated=to_utc_aware_datetime(row.last_updated),
                )
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to load service status {service_key}: {error}") from error
