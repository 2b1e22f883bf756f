"""Transport interface consumed by the connection state machine."""

from __future__ import annotations

import importlib
from enum import IntEnum
from pathlib import Path
from typing import Protocol

from otp_relay.errors import ConnectionLifecycleError


class DisconnectReason(IntEnum):
    """Status codes reported by the chat transport when a connection closes."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


def describe_status_code(status_code: int | None) -> str:
    if status_code is None:
        return "unknown"
    try:
        return DisconnectReason(status_code).name.lower()
    except ValueError:
        return str(status_code)


class TransportListener(Protocol):
    """Connection lifecycle callbacks; may be invoked from any thread."""

    def on_pairing_code(self, code: str) -> None: ...

    def on_open(self) -> None: ...

    def on_close(self, error: ConnectionLifecycleError) -> None: ...


class TransportHandle(Protocol):
    """One live transport session."""

    def send_text(self, address: str, text: str) -> str | None:
        """Deliver text and return the transport's message id when it reports one."""

    def logout(self) -> None:
        """Invalidate the session on the transport side."""

    def close(self) -> None:
        """Force-close the connection; safe to call repeatedly."""


class TransportClient(Protocol):
    """Factory for transport sessions; credentials live under ``session_dir``."""

    def open(self, session_dir: Path, listener: TransportListener) -> TransportHandle: ...


def load_transport(spec: str) -> TransportClient:
    """Instantiate a transport from a ``module:attribute`` import path."""

    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Invalid transport spec {spec!r}. Expected '<module>:<attribute>'.")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    return factory()
