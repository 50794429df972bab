"""Liveness watch over jobs handed to the Agent Executor."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from export_dispatch.orchestrator.errors import JobNotFoundError
from export_dispatch.orchestrator.models import JobStatus, LogLevel
from export_dispatch.orchestrator.repository import JobStore

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_MESSAGE = "Job timed out - agent did not complete within expected time"


class MonitorOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    # Something else moved the job out of processing first.
    RELEASED = "released"


class ProgressMonitor:
    """Polls a job row until the Agent Executor reports a terminal status.

    The executor reports by mutating the row itself. If it stays silent for
    ``max_checks`` x ``check_interval_seconds`` the job is forced to failed.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        max_checks: int = 20,
        check_interval_seconds: float = 30.0,
    ) -> None:
        if max_checks < 1:
            raise ValueError(f"max_checks must be >= 1, got {max_checks}.")
        self.store = store
        self.max_checks = max_checks
        self.check_interval_seconds = check_interval_seconds

    @property
    def deadline_seconds(self) -> float:
        return self.max_checks * self.check_interval_seconds

    async def watch(self, job_id: int) -> MonitorOutcome:
        for check in range(1, self.max_checks + 1):
            await asyncio.sleep(self.check_interval_seconds)
            try:
                job = await asyncio.to_thread(self.store.get_job, job_id)
            except SQLAlchemyError as error:
                logger.warning("Monitor check %s for job #%s failed: %s", check, job_id, error)
                continue
            if job is None:
                logger.warning("Job #%s disappeared while being monitored", job_id)
                return MonitorOutcome.RELEASED
            if job.status is JobStatus.COMPLETED:
                logger.info("Job #%s completed after %s check(s)", job_id, check)
                return MonitorOutcome.COMPLETED
            if job.status is JobStatus.FAILED:
                logger.info("Job #%s reported failure after %s check(s)", job_id, check)
                return MonitorOutcome.FAILED
            if job.status is not JobStatus.PROCESSING:
                return MonitorOutcome.RELEASED

        return await self._expire(job_id)

    async def _expire(self, job_id: int) -> MonitorOutcome:
        try:
            expired = await asyncio.to_thread(
                self.store.update_status,
                job_id,
                JobStatus.FAILED,
                error_message=TIMEOUT_ERROR_MESSAGE,
            )
        except JobNotFoundError:
            logger.warning("Job #%s disappeared before its timeout was recorded", job_id)
            return MonitorOutcome.RELEASED
        if not expired:
            # A terminal report landed between the last check and the timeout.
            job = await asyncio.to_thread(self.store.get_job, job_id)
            if job is not None and job.status is JobStatus.COMPLETED:
                return MonitorOutcome.COMPLETED
            if job is not None and job.status is JobStatus.FAILED:
                return MonitorOutcome.FAILED
            return MonitorOutcome.RELEASED

        await asyncio.to_thread(
            self.store.append_log,
            job_id,
            LogLevel.ERROR,
            f"Job timed out after {self.deadline_seconds:g}s",
        )
        logger.error("Job #%s timed out after %ss", job_id, self.deadline_seconds)
        return MonitorOutcome.TIMED_OUT
