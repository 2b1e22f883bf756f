"""Domain models for the passcode delivery queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a delivery job."""

    recipient: str
    otp: str
    message_body: str
    expires_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    id: int
    recipient: str
    otp: str
    message_body: str
    status: JobStatus
    attempts: int
    created_at: datetime
    processed_at: datetime | None
    error_message: str | None
    expires_at: datetime | None


@dataclass(slots=True)
class JobQuery:
    """Admin listing filter and pagination."""

    status: JobStatus | None = None
    search: str | None = None
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (max(1, self.page) - 1) * self.limit


@dataclass(slots=True)
class JobPage:
    """One page of the admin job listing."""

    jobs: list[JobView]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 1
        return -(-self.total // self.limit)


@dataclass(slots=True)
class JobStats:
    """Job counts grouped by status."""

    counts: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in JobStatus},
    )
    unknown: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values()) + self.unknown
