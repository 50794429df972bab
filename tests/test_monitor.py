from __future__ import annotations

import asyncio

import allure
import pytest

from export_dispatch.orchestrator.models import JobStatus, LogLevel
from export_dispatch.orchestrator.monitor import (
    TIMEOUT_ERROR_MESSAGE,
    MonitorOutcome,
    ProgressMonitor,
)
from export_dispatch.orchestrator.repository import JobStore

pytestmark = [
    allure.epic("Export Queue"),
    allure.feature("Progress Monitor"),
]


def test_silent_agent_is_timed_out_with_single_error_log(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    store.claim_next()
    monitor = ProgressMonitor(store=store, max_checks=3, check_interval_seconds=0.01)

    outcome = asyncio.run(monitor.watch(job.id))

    assert outcome is MonitorOutcome.TIMED_OUT
    current = store.get_job(job.id)
    assert current.status is JobStatus.FAILED
    assert current.error_message == TIMEOUT_ERROR_MESSAGE
    assert "timed out" in current.error_message
    assert current.completed_at is not None
    errors = [entry for entry in store.list_logs(job.id) if entry.level is LogLevel.ERROR]
    assert len(errors) == 1
    assert "timed out" in errors[0].message


def test_monitor_stops_as_soon_as_agent_reports_completion(
    store: JobStore,
    enqueue_job,
) -> None:
    job = enqueue_job()
    store.claim_next()
    monitor = ProgressMonitor(store=store, max_checks=200, check_interval_seconds=0.01)

    async def _scenario() -> MonitorOutcome:
        watcher = asyncio.create_task(monitor.watch(job.id))
        await asyncio.sleep(0.03)
        await asyncio.to_thread(
            store.complete_job,
            job.id,
            result_file_path="exports/x.csv",
            row_count=3,
        )
        return await asyncio.wait_for(watcher, timeout=1.0)

    outcome = asyncio.run(_scenario())

    assert outcome is MonitorOutcome.COMPLETED
    current = store.get_job(job.id)
    assert current.status is JobStatus.COMPLETED
    assert current.error_message is None
    assert all(entry.level is not LogLevel.ERROR for entry in store.list_logs(job.id))


def test_monitor_respects_failure_reported_by_agent(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    store.claim_next()
    store.fail_job(job.id, error_message="Captcha")
    monitor = ProgressMonitor(store=store, max_checks=5, check_interval_seconds=0.01)

    outcome = asyncio.run(monitor.watch(job.id))

    assert outcome is MonitorOutcome.FAILED
    assert store.get_job(job.id).error_message == "Captcha"


def test_deadline_is_checks_times_interval(store: JobStore) -> None:
    monitor = ProgressMonitor(store=store)

    assert monitor.deadline_seconds == 600


def test_max_checks_must_be_positive(store: JobStore) -> None:
    with pytest.raises(ValueError, match="max_checks"):
        ProgressMonitor(store=store, max_checks=0)
