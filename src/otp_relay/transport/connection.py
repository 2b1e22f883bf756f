"""Connection state machine owning the single transport session.

All transitions run on the scheduler's timeline: transport callbacks arriving
from other threads are re-posted with ``call_soon`` and tagged with the
session generation that produced them, so events from a torn-down session
are dropped instead of mutating the current one.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from enum import Enum

from otp_relay.alerts import Notifier
from otp_relay.config import ConnectionSettings
from otp_relay.errors import (
    ConnectionLifecycleError,
    FatalInitError,
    InvalidRecipientError,
    NotReadyError,
    StoreError,
    TransportSendError,
)
from otp_relay.scheduling import ScheduledCall, Scheduler
from otp_relay.transport.base import TransportClient, TransportHandle, describe_status_code
from otp_relay.transport.policy import CloseAction, ReconnectBackoff, decide_close_action
from otp_relay.transport.status import ServiceStatus, ServiceStatusRepository

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")


class ConnectionState(str, Enum):
    CLOSED = "closed"
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    OPEN = "open"
    LOGGED_OUT = "logged_out"
    SESSION_CLEARING = "session_clearing"
    CRITICAL_DISCONNECT = "critical_disconnect"


def to_transport_address(recipient: str, suffix: str) -> str:
    """``+1 (999) 555-0123`` -> ``19995550123<suffix>``."""

    digits = _NON_DIGITS.sub("", recipient)
    if not digits:
        raise InvalidRecipientError(f"Recipient {recipient!r} contains no digits.")
    return f"{digits}{suffix}"


class _SessionEvents:
    """Listener handed to the transport for one session generation."""

    def __init__(self, manager: ConnectionManager, generation: int) -> None:
        self._manager = manager
        self._generation = generation

    def on_pairing_code(self, code: str) -> None:
        self._manager._post(self._generation, self._manager._on_pairing_code, code)

    def on_open(self) -> None:
        self._manager._post(self._generation, self._manager._on_open)

    def on_close(self, error: ConnectionLifecycleError) -> None:
        self._manager._post(self._generation, self._manager._on_close, error)


class ConnectionManager:
    """Owns the transport handle; exposes readiness and a gated ``send``."""

    def __init__(
        self,
        *,
        transport: TransportClient,
        status_repository: ServiceStatusRepository,
        scheduler: Scheduler,
        settings: ConnectionSettings,
        notifier: Notifier | None = None,
    ) -> None:
        self.transport = transport
        self.status_repository = status_repository
        self.scheduler = scheduler
        self.settings = settings
        self.notifier = notifier
        self._state = ConnectionState.CLOSED
        self._handle: TransportHandle | None = None
        self._generation = 0
        self._pairing_code: str | None = None
        self._last_status: ServiceStatus | None = None
        self._reconnect_call: ScheduledCall | None = None
        self._backoff = ReconnectBackoff(
            initial_seconds=settings.initial_retry_delay_seconds,
            multiplier=settings.retry_multiplier,
            ceiling_seconds=settings.max_retry_delay_seconds,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ConnectionState.OPEN and self._handle is not None

    @property
    def pairing_code(self) -> str | None:
        return self._pairing_code

    @property
    def retry_count(self) -> int:
        return self._backoff.retry_count

    @property
    def current_retry_delay(self) -> float:
        return self._backoff.current_delay

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_call is not None and not self._reconnect_call.cancelled

    def initialize(self) -> None:
        """Tear down any session and open a new one with stored or fresh credentials.

        Raises:
            FatalInitError: the credential directory cannot be created.
        """

        if (
            self._state in (ConnectionState.CONNECTING, ConnectionState.INITIALIZING)
            and self._backoff.retry_count > 0
        ):
            logger.info(
                "Initialization skipped: reconnect attempt %s already in progress",
                self._backoff.retry_count,
            )
            return

        self._cancel_reconnect()
        self._discard_handle()
        self._pairing_code = None
        self._transition(ConnectionState.INITIALIZING, ServiceStatus.INITIALIZING)

        session_dir = self.settings.session_dir
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            self._state = ConnectionState.CLOSED
            self._set_status(ServiceStatus.SESSION_DIR_ERROR, str(error))
            logger.critical("Cannot prepare session directory %s: %s", session_dir, error)
            raise FatalInitError(
                f"Session directory {session_dir} is not available: {error}",
            ) from error

        self._generation += 1
        events = _SessionEvents(self, self._generation)
        self._transition(ConnectionState.CONNECTING, ServiceStatus.CONNECTING)
        try:
            self._handle = self.transport.open(session_dir, events)
        except Exception as error:  # noqa: BLE001
            logger.error("Transport failed to open a connection: %s", error)
            self._set_status(ServiceStatus.INITIALIZATION_ERROR, str(error))
            self._handle_closure(
                error
                if isinstance(error, ConnectionLifecycleError)
                else ConnectionLifecycleError(str(error)),
            )

    def send(self, recipient: str, text: str) -> str | None:
        """Deliver text over the open session; returns the transport message id if any.

        Raises:
            NotReadyError: the connection is not open.
            TransportSendError: the recipient is unusable or the transport rejected the send.
        """

        handle = self._handle
        if self._state != ConnectionState.OPEN or handle is None:
            self._set_status(
                ServiceStatus.SEND_ERROR_NOT_READY,
                f"Send attempted while connection is {self._state.value}",
            )
            raise NotReadyError(f"Transport connection is not open (state: {self._state.value}).")

        try:
            address = to_transport_address(recipient, self.settings.address_suffix)
            message_id = handle.send_text(address, text)
        except TransportSendError as error:
            self._set_status(ServiceStatus.SEND_ERROR, str(error))
            raise
        except Exception as error:  # noqa: BLE001
            self._set_status(ServiceStatus.SEND_ERROR, str(error))
            raise TransportSendError(str(error) or type(error).__name__) from error

        if self._last_status in (ServiceStatus.SEND_ERROR, ServiceStatus.SEND_ERROR_NOT_READY):
            self._set_status(ServiceStatus.READY, "Recovered after send error")
        logger.info("Message sent to %s (id=%s)", address, message_id)
        return message_id

    def clear_session_and_restart(self, *, reconnect: bool = True) -> None:
        """Log out, delete stored credentials, and optionally connect from scratch."""

        self._cancel_reconnect()
        self._transition(ConnectionState.SESSION_CLEARING, ServiceStatus.CLEARING_SESSION)

        handle = self._handle
        self._handle = None
        # Events caused by our own logout belong to the old generation.
        self._generation += 1
        if handle is not None:
            try:
                handle.logout()
            except Exception as error:  # noqa: BLE001
                logger.warning("Transport logout failed: %s", error)
            _close_quietly(handle)

        session_dir = self.settings.session_dir
        try:
            shutil.rmtree(session_dir)
        except FileNotFoundError:
            pass
        except OSError as error:
            logger.warning("Failed to delete session directory %s: %s", session_dir, error)
        else:
            logger.info("Session directory %s deleted", session_dir)

        self._backoff.reset()
        self._pairing_code = None

        if reconnect:
            self._state = ConnectionState.CLOSED
            self.initialize()
            return
        self._transition(
            ConnectionState.LOGGED_OUT,
            ServiceStatus.SESSION_CLEARED_AWAITING_MANUAL_INIT,
            "Session cleared; waiting for a manual reinitialize",
        )

    def shutdown(self) -> None:
        """Cancel pending reconnects and close the session without logging out."""

        self._cancel_reconnect()
        self._discard_handle()
        self._transition(ConnectionState.CLOSED, ServiceStatus.DISCONNECTED, "Worker shut down")

    def _post(self, generation: int, handler: Callable[..., None], *args: object) -> None:
        self.scheduler.call_soon(self._dispatch, generation, handler, *args)

    def _dispatch(self, generation: int, handler: Callable[..., None], *args: object) -> None:
        if generation != self._generation:
            logger.debug(
                "Ignoring %s from stale session %s (current %s)",
                getattr(handler, "__name__", handler),
                generation,
                self._generation,
            )
            return
        handler(*args)

    def _on_pairing_code(self, code: str) -> None:
        self._pairing_code = code
        self._transition(
            ConnectionState.AWAITING_PAIRING,
            ServiceStatus.PAIRING_REQUIRED,
            f"Pairing code: {code}",
        )
        logger.warning("Transport pairing required, code %s", code)

    def _on_open(self) -> None:
        self._backoff.reset()
        self._pairing_code = None
        self._transition(ConnectionState.OPEN, ServiceStatus.READY, "Connection open")

    def _on_close(self, error: ConnectionLifecycleError) -> None:
        self._discard_handle()
        self._handle_closure(error)

    def _handle_closure(self, error: ConnectionLifecycleError) -> None:
        reason = describe_status_code(error.status_code)
        action = decide_close_action(
            status_code=error.status_code,
            retry_count=self._backoff.retry_count,
            max_retries=self.settings.max_retries,
        )
        logger.warning("Connection closed (%s: %s); next step %s", reason, error, action.value)

        if action == CloseAction.LOGGED_OUT:
            self._set_status(ServiceStatus.LOGGED_OUT, f"Logged out ({reason})")
            self.clear_session_and_restart(reconnect=False)
        elif action == CloseAction.REPLACED:
            self._transition(
                ConnectionState.CLOSED,
                ServiceStatus.CONNECTION_REPLACED,
                "Connection replaced by another session; not reconnecting",
            )
        elif action == CloseAction.EXHAUSTED:
            self._escalate(reason)
        else:
            delay = self._backoff.next_delay()
            self._transition(
                ConnectionState.CLOSED,
                ServiceStatus.RECONNECTING,
                f"Attempt {self._backoff.retry_count}/{self.settings.max_retries} "
                f"in {delay:.1f}s after {reason}",
            )
            self._reconnect_call = self.scheduler.call_later(delay, self._reconnect)

    def _escalate(self, reason: str) -> None:
        cooldown = self.settings.major_reconnect_cooldown_seconds
        message = (
            f"Transport connection lost after {self._backoff.retry_count} reconnect attempts "
            f"(last reason: {reason}). Next attempt in {cooldown / 3600:.1f}h."
        )
        self._transition(
            ConnectionState.CRITICAL_DISCONNECT,
            ServiceStatus.CRITICAL_DISCONNECT,
            message,
        )
        logger.error(message)
        if self.notifier is not None:
            self.notifier.send(message)
        self._reconnect_call = self.scheduler.call_later(cooldown, self._major_reconnect)

    def _reconnect(self) -> None:
        self._reconnect_call = None
        logger.info("Reconnect attempt %s", self._backoff.retry_count)
        self.initialize()

    def _major_reconnect(self) -> None:
        self._reconnect_call = None
        self._backoff.start_major_attempt(self.settings.major_reconnect_delay_factor)
        self._set_status(
            ServiceStatus.MAJOR_RECONNECT_ATTEMPT,
            f"Retry budget reset; backoff starts at {self._backoff.current_delay:.1f}s",
        )
        self._state = ConnectionState.CLOSED
        self.initialize()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_call is not None:
            self._reconnect_call.cancel()
            self._reconnect_call = None

    def _discard_handle(self) -> None:
        handle = self._handle
        self._handle = None
        self._generation += 1
        if handle is not None:
            _close_quietly(handle)

    def _transition(
        self,
        state: ConnectionState,
        status: ServiceStatus,
        details: str | None = None,
    ) -> None:
        if state != self._state:
            logger.info("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        self._set_status(status, details)

    def _set_status(self, status: ServiceStatus, details: str | None = None) -> None:
        self._last_status = status
        try:
            self.status_repository.upsert(self.settings.service_key, status, details)
        except StoreError as error:
            logger.warning("Could not persist service status %s: %s", status.value, error)


def _close_quietly(handle: TransportHandle) -> None:
    try:
        handle.close()
    except Exception as error:  # noqa: BLE001
        logger.warning("Failed to close transport handle: %s", error)
