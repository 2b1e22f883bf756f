"""Reconnect policy: what to do when the transport connection closes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from otp_relay.transport.base import DisconnectReason


class CloseAction(str, Enum):
    RECONNECT = "reconnect"
    LOGGED_OUT = "logged_out"
    REPLACED = "replaced"
    EXHAUSTED = "exhausted"


def decide_close_action(
    *,
    status_code: int | None,
    retry_count: int,
    max_retries: int,
) -> CloseAction:
    """Map a closure to the next step; terminal reasons win over the retry budget."""

    if status_code == DisconnectReason.LOGGED_OUT:
        return CloseAction.LOGGED_OUT
    if status_code == DisconnectReason.CONNECTION_REPLACED:
        return CloseAction.REPLACED
    if retry_count >= max_retries:
        return CloseAction.EXHAUSTED
    return CloseAction.RECONNECT


@dataclass(slots=True)
class ReconnectBackoff:
    """Exponential reconnect delay with a hard ceiling.

    ``current_delay`` after N consecutive closures equals
    ``min(initial * multiplier**N, ceiling)``; ``reset`` restores ``initial``.
    """

    initial_seconds: float
    multiplier: float
    ceiling_seconds: float
    retry_count: int = 0
    current_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.current_delay <= 0:
            self.current_delay = min(self.initial_seconds, self.ceiling_seconds)

    def next_delay(self) -> float:
        """Count one more closure and return the delay before the next attempt."""

        self.retry_count += 1
        self.current_delay = min(self.current_delay * self.multiplier, self.ceiling_seconds)
        return self.current_delay

    def reset(self) -> None:
        self.retry_count = 0
        self.current_delay = min(self.initial_seconds, self.ceiling_seconds)

    def start_major_attempt(self, factor: float) -> None:
        """Fresh retry budget with a deliberately larger first delay."""

        self.retry_count = 0
        self.current_delay = self.initial_seconds * factor
