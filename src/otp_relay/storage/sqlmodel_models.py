"""SQLModel ORM tables for the delivery queue and service status."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    recipient: str = Field(index=True)
    otp: str
    message_body: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default="pending")
    attempts: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ServiceStatusRow(SQLModel, table=True):
    __tablename__ = "service_status"  # type: ignore[bad-override]

    service_key: str = Field(primary_key=True)
    status: str
    details: str | None = Field(default=None, sa_column=Column(Text))
    last_updated: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
