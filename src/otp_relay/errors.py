"""Error taxonomy shared by the queue, the transport, and the worker."""

from __future__ import annotations


class OtpRelayError(Exception):
    """Base class for all otp-relay errors."""


class ValidationError(OtpRelayError):
    """Input rejected before it reaches the queue."""


class StoreError(OtpRelayError):
    """Job or status store failed on I/O or a constraint."""


class JobNotFoundError(StoreError):
    """Referenced job does not exist."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class NotReadyError(OtpRelayError):
    """Send attempted while the transport connection is not open."""


class TransportSendError(OtpRelayError):
    """The transport rejected a delivery attempt."""


class InvalidRecipientError(TransportSendError):
    """Recipient cannot be mapped to a transport address."""


class ConnectionLifecycleError(OtpRelayError):
    """Transport connection closed; carries the transport's status code."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FatalInitError(OtpRelayError):
    """Initialization cannot proceed; the process is expected to exit."""
