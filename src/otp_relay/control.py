"""File-marker control channel between admin commands and the worker."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ControlSignal(str, Enum):
    """Operator requests, listed in the order the worker services them."""

    LOGOUT = "logout"
    REINITIALIZE = "reinitialize"


MARKER_FILES = {
    ControlSignal.LOGOUT: "logout.signal",
    ControlSignal.REINITIALIZE: "reinitialize.signal",
}


class FileControlChannel:
    """Each signal is the presence of a marker file; consuming deletes it.

    Deletion is the handoff: ``unlink`` succeeds for exactly one consumer,
    so a request is acted on at most once even with concurrent checks.
    """

    def __init__(self, signals_dir: Path) -> None:
        self.signals_dir = signals_dir

    def marker_path(self, signal: ControlSignal) -> Path:
        return self.signals_dir / MARKER_FILES[signal]

    def request(self, signal: ControlSignal) -> Path:
        self.signals_dir.mkdir(parents=True, exist_ok=True)
        path = self.marker_path(signal)
        path.touch()
        logger.info("Control signal %s requested (%s)", signal.value, path)
        return path

    def pending(self) -> list[ControlSignal]:
        return [signal for signal in ControlSignal if self.marker_path(signal).exists()]

    def consume_next(self) -> ControlSignal | None:
        """Remove and return the highest-priority pending signal."""

        for signal in ControlSignal:
            try:
                self.marker_path(signal).unlink()
            except FileNotFoundError:
                continue
            logger.info("Control signal %s consumed", signal.value)
            return signal
        return None
