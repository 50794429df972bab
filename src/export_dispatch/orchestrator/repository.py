"""Persistent job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Collection
from pathlib import Path

from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from export_dispatch.orchestrator.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreUnavailableError,
)
from export_dispatch.orchestrator.models import (
    JobCreate,
    JobDetails,
    JobLogView,
    JobStatus,
    JobView,
    LogLevel,
    OrganizationCreate,
    OrganizationView,
)
from export_dispatch.storage.alembic_runner import upgrade_head
from export_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from export_dispatch.storage.sqlmodel_models import ExportJob, JobLog, Organization

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

# Source states from which each target status may be entered.
_ALLOWED_SOURCES: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.PENDING, JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}


class JobStore:
    """Queue persistence facade with atomic claim semantics."""

    def __init__(
        self,
        db_path: Path,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.max_retries = max_retries
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def ping(self) -> None:
        """Check connectivity, raising StoreUnavailableError when the store is unreachable."""

        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as error:
            message = f"Job store unavailable at {self.db_path}: {error}"
            raise StoreUnavailableError(message) from error

    def enqueue(self, payload: JobCreate) -> JobView:
        """Insert a pending job and narrate its creation."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = ExportJob(
                organization_id=payload.organization_id,
                user_id=payload.user_id,
                list_name=payload.list_name,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            session.add(
                JobLog(
                    job_id=row.id,
                    level=LogLevel.INFO.value,
                    message=f"Job created for list: {payload.list_name}",
                    created_at=now,
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self) -> JobView | None:
        """Atomically claim the best eligible pending job, moving it to processing.

        Candidates are ordered by priority (highest first) then age. A candidate
        taken by a concurrent claimer is skipped rather than waited on.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ExportJob)
                    .where(
                        ExportJob.status == JobStatus.PENDING.value,
                        ExportJob.retry_count < self.max_retries,
                    )
                    .order_by(
                        col(ExportJob.priority).desc(),
                        col(ExportJob.created_at).asc(),
                        col(ExportJob.id).asc(),
                    )
                    .limit(1)
                    .with_for_update(skip_locked=True),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(ExportJob)
                    .where(
                        col(ExportJob.id) == candidate.id,
                        col(ExportJob.status) == JobStatus.PENDING.value,
                        col(ExportJob.retry_count) < self.max_retries,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=func.coalesce(col(ExportJob.started_at), now),
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.exec(
                    select(ExportJob).where(ExportJob.id == candidate.id),
                ).one()
                return _to_job_view(claimed)

    def update_status(  # noqa: PLR0913
        self,
        job_id: int,
        status: JobStatus,
        *,
        agent_session_key: str | None = None,
        result_file_path: str | None = None,
        row_count: int | None = None,
        error_message: str | None = None,
        from_statuses: Collection[JobStatus] | None = None,
    ) -> bool:
        """Transition a job, stamping lifecycle timestamps once.

        Partial fields are written only when supplied. ``from_statuses``
        narrows the allowed source states further. Returns False when the
        job's current status does not allow entering ``status``.
        """

        allowed = _ALLOWED_SOURCES.get(status)
        if allowed is None:
            raise ValueError(f"Unsupported target status: {status.value}")
        if from_statuses is not None:
            allowed = allowed & frozenset(from_statuses)

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"status": status.value, "updated_at": now}
        if agent_session_key is not None:
            values["agent_session_key"] = agent_session_key
        if result_file_path is not None:
            values["result_file_path"] = result_file_path
        if row_count is not None:
            values["row_count"] = row_count
        if error_message is not None:
            values["error_message"] = error_message
        if status is JobStatus.PROCESSING:
            values["started_at"] = func.coalesce(col(ExportJob.started_at), now)
        if status in {JobStatus.COMPLETED, JobStatus.FAILED}:
            values["completed_at"] = func.coalesce(col(ExportJob.completed_at), now)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExportJob)
                .where(
                    col(ExportJob.id) == job_id,
                    col(ExportJob.status).in_([source.value for source in allowed]),
                )
                .values(**values),
            )
            if result.rowcount == 1:
                session.commit()
                return True
            session.rollback()
            if session.get(ExportJob, job_id) is None:
                raise JobNotFoundError(job_id)
            return False

    def increment_retry(self, job_id: int) -> int:
        """Bump the retry counter regardless of status and return the new value."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExportJob)
                .where(col(ExportJob.id) == job_id)
                .values(
                    retry_count=col(ExportJob.retry_count) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(job_id)
            session.commit()
            row = session.exec(select(ExportJob).where(ExportJob.id == job_id)).one()
            return row.retry_count

    def append_log(self, job_id: int, level: LogLevel, message: str) -> None:
        """Append a log entry; storage failures are logged, never raised."""

        try:
            with Session(self.engine) as session:
                session.add(
                    JobLog(
                        job_id=job_id,
                        level=level.value,
                        message=message,
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to append %s log for job #%s: %s", level.value, job_id, error)

    def complete_job(self, job_id: int, *, result_file_path: str, row_count: int) -> bool:
        """Agent Executor callback: record a successful export."""

        completed = self.update_status(
            job_id,
            JobStatus.COMPLETED,
            result_file_path=result_file_path,
            row_count=row_count,
        )
        if completed:
            self.append_log(
                job_id,
                LogLevel.INFO,
                f"Job completed successfully: {row_count} row(s) in {result_file_path}",
            )
        return completed

    def fail_job(self, job_id: int, *, error_message: str) -> bool:
        """Agent Executor callback: record a failed export."""

        failed = self.update_status(job_id, JobStatus.FAILED, error_message=error_message)
        if failed:
            self.append_log(job_id, LogLevel.ERROR, error_message)
        return failed

    def cancel_job(self, job_id: int) -> None:
        """Producer cancellation of a job that has not been claimed yet."""

        if not self.update_status(job_id, JobStatus.CANCELLED):
            job = self.get_job(job_id)
            status = job.status.value if job is not None else "unknown"
            raise InvalidTransitionError(f"Job cannot be cancelled from status={status}")
        self.append_log(job_id, LogLevel.INFO, "Job cancelled")

    def requeue_job(self, job_id: int) -> JobView:
        """Operator retry: put a failed job back in the queue.

        The retry counter is kept, so the claim rule still refuses jobs that
        reached ``max_retries``.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExportJob)
                .where(
                    col(ExportJob.id) == job_id,
                    col(ExportJob.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(ExportJob, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                raise InvalidTransitionError(
                    f"Only failed jobs can be re-queued, got status={row.status}",
                )
            session.add(
                JobLog(
                    job_id=job_id,
                    level=LogLevel.WARNING.value,
                    message="Job re-queued by operator",
                    created_at=now,
                ),
            )
            session.commit()
            row = session.exec(select(ExportJob).where(ExportJob.id == job_id)).one()
            view = _to_job_view(row)
        if view.retry_count >= self.max_retries:
            logger.warning(
                "Job #%s re-queued with retry_count=%s; it stays ineligible for claim",
                job_id,
                view.retry_count,
            )
        return view

    def get_job(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(ExportJob, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(ExportJob)
                .order_by(col(ExportJob.created_at).desc(), col(ExportJob.id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(ExportJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_logs(self, job_id: int, *, limit: int | None = 50) -> list[JobLogView]:
        """Return log entries for one job, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(JobLog)
                .where(JobLog.job_id == job_id)
                .order_by(col(JobLog.created_at).desc(), col(JobLog.id).desc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_log_view(row) for row in rows]

    def get_job_details(self, job_id: int, *, log_limit: int | None = 50) -> JobDetails | None:
        """Read-only projection of one job with its recent log stream."""

        job = self.get_job(job_id)
        if job is None:
            return None
        return JobDetails(job=job, logs=self.list_logs(job_id, limit=log_limit))

    def add_organization(self, payload: OrganizationCreate) -> OrganizationView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Organization(
                name=payload.name,
                slug=payload.slug,
                is_active=payload.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"Organization slug already exists: {payload.slug}") from error
            session.refresh(row)
            return _to_organization_view(row)

    def get_organization(self, organization_id: int) -> OrganizationView | None:
        with Session(self.engine) as session:
            row = session.get(Organization, organization_id)
            if row is None:
                return None
            return _to_organization_view(row)

    def list_organizations(self) -> list[OrganizationView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Organization).order_by(col(Organization.id).asc())).all()
            return [_to_organization_view(row) for row in rows]

    def set_organization_active(self, organization_id: int, *, is_active: bool) -> OrganizationView:
        """Enable or disable dispatch for one organization's jobs."""

        with Session(self.engine) as session:
            row = session.get(Organization, organization_id)
            if row is None:
                raise ValueError(f"Organization not found: {organization_id}")
            row.is_active = is_active
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_organization_view(row)


def open_job_store(
    db_path: Path,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sqlite_busy_timeout_ms: int = 5000,
) -> JobStore:
    """Open a migrated store, raising StoreUnavailableError if it cannot be reached."""

    store = JobStore(
        db_path,
        max_retries=max_retries,
        sqlite_busy_timeout_ms=sqlite_busy_timeout_ms,
    )
    try:
        store.ping()
        store.init_schema()
    except StoreUnavailableError:
        store.close()
        raise
    except SQLAlchemyError as error:
        store.close()
        raise StoreUnavailableError(f"Job store unavailable at {db_path}: {error}") from error
    return store


def _to_job_view(row: ExportJob) -> JobView:
    if row.id is None:
        raise RuntimeError("Job row has no identity; flush before reading it back.")
    return JobView(
        id=row.id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        list_name=row.list_name,
        status=JobStatus(row.status),
        priority=row.priority,
        retry_count=row.retry_count,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        agent_session_key=row.agent_session_key,
        result_file_path=row.result_file_path,
        row_count=row.row_count,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_organization_view(row: Organization) -> OrganizationView:
    if row.id is None:
        raise RuntimeError("Organization row has no identity; flush before reading it back.")
    return OrganizationView(
        id=row.id,
        name=row.name,
        slug=row.slug,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_log_view(row: JobLog) -> JobLogView:
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        level=LogLevel(row.level),
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
    )
