"""Persistent delivery job queue."""

from otp_relay.jobs.models import JobCreate, JobPage, JobQuery, JobStats, JobStatus, JobView
from otp_relay.jobs.repository import JobRepository

__all__ = [
    "JobCreate",
    "JobPage",
    "JobQuery",
    "JobRepository",
    "JobStats",
    "JobStatus",
    "JobView",
]
