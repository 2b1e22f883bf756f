from pathlib import Path

import allure
from sqlalchemy import text

from otp_relay.jobs.repository import JobRepository
from otp_relay.transport.status import ServiceStatus, ServiceStatusRepository

pytestmark = [
    allure.epic("Delivery Queue"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name IN ('jobs', 'service_status')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        indexes = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'jobs'"),
        ).scalars().all()

    assert version == "20261019_0001"
    assert tables == ["jobs", "service_status"]
    assert "idx_jobs_status_created" in indexes
    repository.close()


def test_init_schema_is_idempotent_and_seeds_status_row(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    jobs = JobRepository(db_path)
    jobs.init_schema()
    jobs.init_schema()

    statuses = ServiceStatusRepository(db_path)
    statuses.init_schema("transport_connection")
    statuses.init_schema("transport_connection")

    row = statuses.get("transport_connection")
    assert row is not None
    assert row.status == ServiceStatus.UNKNOWN.value
    assert row.details == "Not yet reported by worker"
    jobs.close()
    statuses.close()
