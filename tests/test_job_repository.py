from __future__ import annotations

import logging
import threading
from pathlib import Path

import allure
import pytest
from sqlmodel import Session

from otp_relay.errors import JobNotFoundError, StoreError
from otp_relay.jobs.models import JobCreate, JobQuery, JobStatus
from otp_relay.jobs.repository import UNKNOWN_FAILURE, JobRepository
from otp_relay.storage.common import utc_now
from otp_relay.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Delivery Queue"),
    allure.feature("Job Store"),
]


def _enqueue(repository: JobRepository, recipient: str = "+19995550123", otp: str = "1234") -> int:
    return repository.enqueue(
        JobCreate(recipient=recipient, otp=otp, message_body=f"Your code is {otp}"),
    )


def _assert_error_iff_failed(repository: JobRepository, job_id: int) -> None:
    job = repository.get_job(job_id)
    assert job is not None
    assert (job.status == JobStatus.FAILED) == (job.error_message is not None)


def test_enqueue_creates_pending_job_with_zero_attempts(job_repository: JobRepository) -> None:
    expires_at = utc_now()
    job_id = job_repository.enqueue(
        JobCreate(
            recipient="+19995550123",
            otp="0042",
            message_body="Your code is 0042",
            expires_at=expires_at,
        ),
    )

    job = job_repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.processed_at is None
    assert job.error_message is None
    assert job.otp == "0042"
    assert job.expires_at is not None
    assert abs((job.expires_at - expires_at).total_seconds()) < 1


def test_claim_send_and_mark_sent(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository, otp="1234")

    claimed = job_repository.claim_next()

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.processed_at is not None
    assert claimed.otp == "1234"

    assert job_repository.set_status(job_id, JobStatus.SENT) is True
    sent = job_repository.get_job(job_id)
    assert sent is not None
    assert sent.status == JobStatus.SENT
    assert sent.error_message is None
    assert sent.attempts == 1


def test_claim_returns_oldest_pending_first(job_repository: JobRepository) -> None:
    first = _enqueue(job_repository, recipient="+19995550001")
    second = _enqueue(job_repository, recipient="+19995550002")

    assert job_repository.claim_next().id == first
    assert job_repository.claim_next().id == second
    assert job_repository.claim_next() is None


def test_claim_on_empty_queue_returns_none(job_repository: JobRepository) -> None:
    assert job_repository.claim_next() is None


def test_concurrent_claims_hand_out_single_job_once(db_path: Path, job_repository) -> None:
    job_id = _enqueue(job_repository)
    barrier = threading.Barrier(2)
    results: list[object] = []
    lock = threading.Lock()

    def _claim() -> None:
        repository = JobRepository(db_path)
        try:
            barrier.wait(timeout=5)
            claimed = repository.claim_next()
            with lock:
                results.append(claimed)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    winners = [result for result in results if result is not None]
    assert len(results) == 2
    assert len(winners) == 1
    assert winners[0].id == job_id

    job = job_repository.get_job(job_id)
    assert job is not None
    assert job.attempts == 1
    assert job.status == JobStatus.PROCESSING


def test_claim_that_loses_race_returns_none(
    job_repository: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job_id = _enqueue(job_repository)
    assert job_repository.claim_next() is not None

    # Simulate a claimer that selected the row before the other one updated it.
    monkeypatch.setattr(job_repository, "_oldest_pending_id", lambda session: job_id)

    assert job_repository.claim_next() is None
    job = job_repository.get_job(job_id)
    assert job is not None
    assert job.attempts == 1


def test_failed_status_records_error_and_pending_clears_it(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    job_repository.claim_next()

    job_repository.set_status(job_id, JobStatus.FAILED, "timeout")
    failed = job_repository.get_job(job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "timeout"
    assert failed.processed_at is not None
    _assert_error_iff_failed(job_repository, job_id)

    job_repository.set_status(job_id, JobStatus.PENDING)
    pending = job_repository.get_job(job_id)
    assert pending.status == JobStatus.PENDING
    assert pending.error_message is None
    assert pending.processed_at is None
    assert pending.attempts == 1
    _assert_error_iff_failed(job_repository, job_id)


def test_failed_status_without_reason_uses_placeholder(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    job_repository.claim_next()

    job_repository.set_status(job_id, JobStatus.FAILED)

    assert job_repository.get_job(job_id).error_message == UNKNOWN_FAILURE


def test_set_status_on_missing_job_returns_false_and_warns(
    job_repository: JobRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.WARNING, logger="otp_relay.jobs.repository"):
        assert job_repository.set_status(999, JobStatus.SENT) is False

    assert "Job 999 not found" in caplog.text


def test_set_status_rejects_processing_transition(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)

    with pytest.raises(ValueError, match="Unsupported status transition"):
        job_repository.set_status(job_id, JobStatus.PROCESSING)


def test_retry_after_failure_continues_attempt_count(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    first = job_repository.claim_next()
    job_repository.set_status(job_id, JobStatus.FAILED, "timeout")

    retried = job_repository.retry_job(job_id)

    assert retried.status == JobStatus.PENDING
    assert retried.error_message is None
    assert retried.processed_at is None
    assert retried.attempts == 1

    second = job_repository.claim_next()
    assert second is not None
    assert second.id == job_id
    assert second.attempts == 2
    assert second.processed_at is not None
    assert second.processed_at >= first.processed_at


def test_retry_unknown_job_raises_not_found(job_repository: JobRepository) -> None:
    with pytest.raises(JobNotFoundError, match="Job not found: 404"):
        job_repository.retry_job(404)


def test_retry_rejects_job_held_by_worker(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    job_repository.claim_next()

    with pytest.raises(StoreError, match="being processed"):
        job_repository.retry_job(job_id)

    assert job_repository.get_job(job_id).status == JobStatus.PROCESSING


def test_retry_of_sent_job_warns_but_requeues(
    job_repository: JobRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    job_id = _enqueue(job_repository)
    job_repository.claim_next()
    job_repository.set_status(job_id, JobStatus.SENT)

    with caplog.at_level(logging.WARNING, logger="otp_relay.jobs.repository"):
        retried = job_repository.retry_job(job_id)

    assert retried.status == JobStatus.PENDING
    assert "currently sent" in caplog.text


def test_retry_with_attempt_reset(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    job_repository.claim_next()
    job_repository.set_status(job_id, JobStatus.FAILED, "timeout")

    retried = job_repository.retry_job(job_id, reset_attempts=True)

    assert retried.attempts == 0
    assert job_repository.claim_next().attempts == 1


def test_attempts_never_decrease_without_explicit_reset(job_repository: JobRepository) -> None:
    job_id = _enqueue(job_repository)
    seen: list[int] = []
    for reason in ("timeout", "recipient offline", "not ready"):
        claimed = job_repository.claim_next()
        seen.append(claimed.attempts)
        job_repository.set_status(job_id, JobStatus.FAILED, reason)
        seen.append(job_repository.get_job(job_id).attempts)
        job_repository.set_status(job_id, JobStatus.PENDING)
        seen.append(job_repository.get_job(job_id).attempts)
        _assert_error_iff_failed(job_repository, job_id)

    assert seen == sorted(seen)
    assert seen[-1] == 3


def test_fail_orphaned_jobs_marks_processing_rows(job_repository: JobRepository) -> None:
    orphan = _enqueue(job_repository, recipient="+19995550001")
    waiting = _enqueue(job_repository, recipient="+19995550002")
    job_repository.claim_next()

    assert job_repository.fail_orphaned_jobs(reason="worker crashed") == 1

    assert job_repository.get_job(orphan).status == JobStatus.FAILED
    assert job_repository.get_job(orphan).error_message == "worker crashed"
    assert job_repository.get_job(waiting).status == JobStatus.PENDING
    assert job_repository.fail_orphaned_jobs(reason="worker crashed") == 0


def test_query_jobs_filters_searches_and_paginates(job_repository: JobRepository) -> None:
    ids = [_enqueue(job_repository, recipient=f"+1999555000{index}") for index in range(5)]
    job_repository.claim_next()
    job_repository.set_status(ids[0], JobStatus.FAILED, "recipient 100% unreachable")

    page = job_repository.query_jobs(JobQuery(page=1, limit=2))
    assert page.total == 5
    assert page.total_pages == 3
    assert [job.id for job in page.jobs] == [ids[4], ids[3]]

    last_page = job_repository.query_jobs(JobQuery(page=3, limit=2))
    assert [job.id for job in last_page.jobs] == [ids[0]]

    failed = job_repository.query_jobs(JobQuery(status=JobStatus.FAILED))
    assert [job.id for job in failed.jobs] == [ids[0]]

    by_recipient = job_repository.query_jobs(JobQuery(search="5550003"))
    assert [job.id for job in by_recipient.jobs] == [ids[3]]

    by_error = job_repository.query_jobs(JobQuery(search="100%"))
    assert [job.id for job in by_error.jobs] == [ids[0]]

    literal_percent = job_repository.query_jobs(JobQuery(search="%"))
    assert literal_percent.total == 1

    nothing = job_repository.query_jobs(JobQuery(search="no-such-text"))
    assert nothing.total == 0
    assert nothing.total_pages == 1


def test_job_stats_counts_statuses_and_unknown(job_repository: JobRepository) -> None:
    sent = _enqueue(job_repository)
    _enqueue(job_repository)
    job_repository.claim_next()
    job_repository.set_status(sent, JobStatus.SENT)
    with Session(job_repository.engine) as session:
        session.add(
            Job(
                recipient="+19995550999",
                otp="0000",
                message_body="legacy",
                status="queued",
                attempts=0,
                created_at=utc_now().replace(tzinfo=None),
            ),
        )
        session.commit()

    stats = job_repository.job_stats()

    assert stats.counts == {"pending": 1, "processing": 0, "sent": 1, "failed": 0}
    assert stats.unknown == 1
    assert stats.total == 3
