"""SQLModel ORM tables for export job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlmodel import Field, SQLModel


class ExportJob(SQLModel, table=True):
    __tablename__ = "export_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_export_jobs_queue", "status", "priority", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    organization_id: int = Field(index=True)
    user_id: int | None = Field(default=None, index=True)
    list_name: str
    status: str = Field(index=True)
    priority: int = Field(default=0)
    retry_count: int = Field(default=0)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    agent_session_key: str | None = None
    result_file_path: str | None = None
    row_count: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("export_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    level: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(sa_column=Column(String, nullable=False, unique=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
