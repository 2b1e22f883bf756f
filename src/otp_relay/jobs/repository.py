"""Persistent queue repository for passcode delivery jobs."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from otp_relay.errors import JobNotFoundError, StoreError
from otp_relay.jobs.models import JobCreate, JobPage, JobQuery, JobStats, JobStatus, JobView
from otp_relay.storage.alembic_runner import upgrade_head
from otp_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from otp_relay.storage.sqlmodel_models import Job

logger = logging.getLogger(__name__)

UNKNOWN_FAILURE = "Unknown delivery error"


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    The claim is made race-safe by a conditional update on ``status``; the
    store serializes writes, so no advisory locks are taken.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> int:
        """Insert a pending job and return its id."""

        now = to_db_datetime(utc_now())
        with _store_errors("enqueue job"), Session(self.engine) as session:
            row = Job(
                recipient=payload.recipient,
                otp=payload.otp,
                message_body=payload.message_body,
                status=JobStatus.PENDING.value,
                attempts=0,
                created_at=now,
                expires_at=(
                    to_db_datetime(payload.expires_at) if payload.expires_at is not None else None
                ),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            job_id = row.id
        if job_id is None:
            raise StoreError("Job insert did not return an id.")
        logger.info("Job %s enqueued for %s", job_id, payload.recipient)
        return job_id

    def claim_next(self) -> JobView | None:
        """Claim the oldest pending job; None when the queue is empty or the race is lost."""

        now = to_db_datetime(utc_now())
        with _store_errors("claim next job"), Session(self.engine) as session:
            candidate_id = self._oldest_pending_id(session)
            if candidate_id is None:
                return None

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == candidate_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=col(Job.attempts) + 1,
                    processed_at=now,
                    error_message=None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info("Job %s was claimed elsewhere or changed status", candidate_id)
                return None
            session.commit()

            claimed = session.exec(select(Job).where(Job.id == candidate_id)).one()
            view = _to_job_view(claimed)
        logger.info("Job %s claimed (attempt %s)", view.id, view.attempts)
        return view

    def set_status(
        self,
        job_id: int,
        status: JobStatus,
        error_message: str | None = None,
    ) -> bool:
        """Unconditionally move a job to sent, failed, or back to pending.

        Returns False when no row was affected (job no longer exists).
        """

        now = to_db_datetime(utc_now())
        if status == JobStatus.SENT:
            values: dict[str, object] = {
                "status": status.value,
                "error_message": None,
                "processed_at": now,
            }
        elif status == JobStatus.FAILED:
            values = {
                "status": status.value,
                "error_message": error_message or UNKNOWN_FAILURE,
                "processed_at": now,
            }
        elif status == JobStatus.PENDING:
            values = {
                "status": status.value,
                "error_message": None,
                "processed_at": None,
            }
        else:
            raise ValueError(f"Unsupported status transition: {status}")

        with _store_errors(f"set job {job_id} to {status.value}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Job).where(col(Job.id) == job_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Job %s not found; status not updated to %s", job_id, status.value)
                return False
            session.commit()
        logger.info("Job %s status updated to %s", job_id, status.value)
        return True

    def retry_job(self, job_id: int, *, reset_attempts: bool = False) -> JobView:
        """Manual operator retry: return a job to the pending pool."""

        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status == JobStatus.PROCESSING:
            raise StoreError(
                f"Job {job_id} is being processed by the worker and cannot be retried now.",
            )
        if job.status != JobStatus.FAILED:
            logger.warning("Retrying job %s which is currently %s", job_id, job.status.value)

        if reset_attempts:
            self.reset_attempts(job_id)
        if not self.set_status(job_id, JobStatus.PENDING):
            raise JobNotFoundError(job_id)

        refreshed = self.get_job(job_id)
        if refreshed is None:
            raise JobNotFoundError(job_id)
        logger.info("Job %s re-queued by operator", job_id)
        return refreshed

    def reset_attempts(self, job_id: int) -> bool:
        """Administrative reset of the attempt counter."""

        with _store_errors(f"reset attempts for job {job_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Job).where(col(Job.id) == job_id).values(attempts=0),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.warning("Job %s attempts reset to 0 by operator", job_id)
        return True

    def fail_orphaned_jobs(self, *, reason: str) -> int:
        """Mark jobs left in processing by a previous worker run as failed."""

        now = to_db_datetime(utc_now())
        with _store_errors("fail orphaned jobs"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.status) == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=reason,
                    processed_at=now,
                ),
            )
            session.commit()
            count = result.rowcount or 0
        if count:
            logger.warning("Marked %s orphaned processing job(s) as failed", count)
        return count

    def get_job(self, job_id: int) -> JobView | None:
        with _store_errors(f"load job {job_id}"), Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def query_jobs(self, query: JobQuery) -> JobPage:
        """Newest-first page of jobs with optional status filter and free-text search."""

        conditions = []
        if query.status is not None:
            conditions.append(col(Job.status) == query.status.value)
        if query.search:
            term = query.search.strip()
            conditions.append(
                or_(
                    col(Job.recipient).contains(term, autoescape=True),
                    col(Job.otp).contains(term, autoescape=True),
                    col(Job.message_body).contains(term, autoescape=True),
                    col(Job.error_message).contains(term, autoescape=True),
                ),
            )

        with _store_errors("query jobs"), Session(self.engine) as session:
            total = session.exec(
                select(func.count()).select_from(Job).where(*conditions),
            ).one()
            rows = session.exec(
                select(Job)
                .where(*conditions)
                .order_by(col(Job.created_at).desc(), col(Job.id).desc())
                .offset(query.offset)
                .limit(query.limit),
            ).all()
            jobs = [_to_job_view(row) for row in rows]
        return JobPage(jobs=jobs, total=int(total), page=max(1, query.page), limit=query.limit)

    def job_stats(self) -> JobStats:
        with _store_errors("aggregate job stats"), Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        stats = JobStats()
        for status, count in rows:
            if status in stats.counts:
                stats.counts[status] = int(count)
            else:
                stats.unknown += int(count)
        return stats

    def _oldest_pending_id(self, session: Session) -> int | None:
        return session.exec(
            select(Job.id)
            .where(Job.status == JobStatus.PENDING.value)
            .order_by(col(Job.created_at).asc(), col(Job.id).asc())
            .limit(1),
        ).one_or_none()


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        logger.error("Store failure while trying to %s: %s", action, error)
        raise StoreError(f"Failed to {action}: {error}") from error


def _to_job_view(row: Job) -> JobView:
    if row.id is None:
        raise StoreError("Job row has no id.")
    return JobView(
        id=row.id,
        recipient=row.recipient,
        otp=row.otp,
        message_body=row.message_body,
        status=JobStatus(row.status),
        attempts=row.attempts,
        created_at=to_utc_aware_datetime(row.created_at),
        processed_at=(
            to_utc_aware_datetime(row.processed_at) if row.processed_at is not None else None
        ),
        error_message=row.error_message,
        expires_at=to_utc_aware_datetime(row.expires_at) if row.expires_at is not None else None,
    )
