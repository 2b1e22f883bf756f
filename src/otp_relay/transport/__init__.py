"""Chat transport connection management."""

from otp_relay.transport.base import DisconnectReason, TransportClient, load_transport
from otp_relay.transport.connection import ConnectionManager, ConnectionState
from otp_relay.transport.status import ServiceStatus, ServiceStatusRepository

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "DisconnectReason",
    "ServiceStatus",
    "ServiceStatusRepository",
    "TransportClient",
    "load_transport",
]
