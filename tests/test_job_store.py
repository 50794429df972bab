from __future__ import annotations

import queue
import threading
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from export_dispatch.orchestrator.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreUnavailableError,
)
from export_dispatch.orchestrator.models import JobCreate, JobStatus, LogLevel, OrganizationCreate
from export_dispatch.orchestrator.repository import JobStore, open_job_store

pytestmark = [
    allure.epic("Export Queue"),
    allure.feature("Job Store"),
]


def test_enqueue_creates_pending_job_with_creation_log(store: JobStore, enqueue_job) -> None:
    job = enqueue_job("Hot leads", priority=2)

    assert job.status is JobStatus.PENDING
    assert job.priority == 2
    assert job.retry_count == 0
    assert job.started_at is None
    assert job.completed_at is None

    logs = store.list_logs(job.id)
    assert [(entry.level, entry.message) for entry in logs] == [
        (LogLevel.INFO, "Job created for list: Hot leads"),
    ]


def test_claim_next_prefers_priority_then_age(store: JobStore, enqueue_job) -> None:
    oldest_low = enqueue_job("low-1")
    enqueue_job("low-2")
    high = enqueue_job("high", priority=5)

    first = store.claim_next()
    second = store.claim_next()
    third = store.claim_next()

    assert first is not None and first.id == high.id
    assert second is not None and second.id == oldest_low.id
    assert third is not None and third.list_name == "low-2"
    assert store.claim_next() is None


def test_claim_next_moves_job_to_processing_and_stamps_started_at(
    store: JobStore,
    enqueue_job,
) -> None:
    enqueue_job()

    claimed = store.claim_next()

    assert claimed is not None
    assert claimed.status is JobStatus.PROCESSING
    assert claimed.started_at is not None
    assert claimed.started_at.tzinfo is not None


def test_claim_next_returns_none_on_empty_queue(store: JobStore) -> None:
    assert store.claim_next() is None


def test_claim_next_skips_jobs_at_retry_limit_regardless_of_priority(
    store: JobStore,
    enqueue_job,
) -> None:
    exhausted = enqueue_job("exhausted", priority=100)
    eligible = enqueue_job("eligible", priority=0)
    for _ in range(store.max_retries):
        store.increment_retry(exhausted.id)

    claimed = store.claim_next()

    assert claimed is not None
    assert claimed.id == eligible.id
    assert store.claim_next() is None
    assert store.get_job(exhausted.id).status is JobStatus.PENDING


def test_concurrent_claims_never_return_the_same_job(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    seed = JobStore(db_path)
    seed.init_schema()
    for index in range(3):
        seed.enqueue(JobCreate(organization_id=1, list_name=f"list-{index}"))
    seed.close()

    start = threading.Barrier(6)
    results: queue.Queue[int | None] = queue.Queue()
    errors: queue.Queue[BaseException] = queue.Queue()

    def _claim() -> None:
        claimer = JobStore(db_path)
        try:
            start.wait(timeout=5)
            job = claimer.claim_next()
            results.put(job.id if job is not None else None)
        except BaseException as error:  # noqa: BLE001
            errors.put(error)
        finally:
            claimer.close()

    threads = [threading.Thread(target=_claim) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors.empty()
    claimed = [results.get_nowait() for _ in range(results.qsize())]
    claimed_ids = [job_id for job_id in claimed if job_id is not None]
    assert len(claimed) == 6
    assert len(claimed_ids) == len(set(claimed_ids)) == 3


def test_update_status_sets_partial_fields_only_when_supplied(
    store: JobStore,
    enqueue_job,
) -> None:
    job = enqueue_job()
    store.claim_next()
    store.update_status(job.id, JobStatus.PROCESSING, agent_session_key="export:job-1")

    store.update_status(job.id, JobStatus.PROCESSING)

    current = store.get_job(job.id)
    assert current.agent_session_key == "export:job-1"
    assert current.result_file_path is None


def test_update_status_stamps_timestamps_once(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    claimed = store.claim_next()

    assert store.update_status(job.id, JobStatus.PROCESSING, agent_session_key="k")
    after_second_entry = store.get_job(job.id)
    assert after_second_entry.started_at == claimed.started_at

    assert store.update_status(job.id, JobStatus.COMPLETED, result_file_path="out.csv", row_count=7)
    completed = store.get_job(job.id)
    assert completed.completed_at is not None
    assert completed.started_at == claimed.started_at
    assert completed.row_count == 7


def test_terminal_status_is_never_left(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    store.claim_next()
    assert store.update_status(job.id, JobStatus.FAILED, error_message="boom")

    assert not store.update_status(job.id, JobStatus.PROCESSING)
    assert not store.update_status(job.id, JobStatus.COMPLETED)
    assert store.get_job(job.id).status is JobStatus.FAILED
    assert store.get_job(job.id).error_message == "boom"


def test_update_status_rejects_pending_target(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()

    with pytest.raises(ValueError, match="Unsupported target status"):
        store.update_status(job.id, JobStatus.PENDING)


def test_update_status_raises_for_unknown_job(store: JobStore) -> None:
    with pytest.raises(JobNotFoundError, match="Job not found: 404"):
        store.update_status(404, JobStatus.PROCESSING)


def test_increment_retry_is_independent_of_status(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()

    assert store.increment_retry(job.id) == 1
    assert store.increment_retry(job.id) == 2
    assert store.get_job(job.id).status is JobStatus.PENDING


def test_append_log_never_raises_on_storage_failure(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    with store.engine.begin() as connection:
        connection.execute(text("DROP TABLE job_logs"))

    store.append_log(job.id, LogLevel.ERROR, "lost")


def test_logs_are_returned_newest_first_and_capped(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    for index in range(5):
        store.append_log(job.id, LogLevel.INFO, f"step {index}")

    details = store.get_job_details(job.id, log_limit=3)

    assert details is not None
    assert [entry.message for entry in details.logs] == ["step 4", "step 3", "step 2"]


def test_callbacks_record_terminal_outcomes(store: JobStore, enqueue_job) -> None:
    done = enqueue_job("done")
    broken = enqueue_job("broken")
    store.claim_next()
    store.claim_next()

    assert store.complete_job(done.id, result_file_path="exports/done.csv", row_count=12)
    assert store.fail_job(broken.id, error_message="Login failed")

    assert store.get_job(done.id).status is JobStatus.COMPLETED
    assert store.get_job(done.id).result_file_path == "exports/done.csv"
    assert store.get_job(broken.id).status is JobStatus.FAILED
    assert store.list_logs(broken.id)[0].message == "Login failed"
    assert not store.complete_job(broken.id, result_file_path="late.csv", row_count=1)


def test_cancel_only_from_pending(store: JobStore, enqueue_job) -> None:
    pending = enqueue_job("pending")
    store.cancel_job(pending.id)
    assert store.get_job(pending.id).status is JobStatus.CANCELLED

    running = enqueue_job("running")
    store.claim_next()
    with pytest.raises(InvalidTransitionError, match="status=processing"):
        store.cancel_job(running.id)


def test_requeue_keeps_retry_count(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()
    store.claim_next()
    store.increment_retry(job.id)
    store.update_status(job.id, JobStatus.FAILED, error_message="HTTP 500")

    requeued = store.requeue_job(job.id)

    assert requeued.status is JobStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.started_at is None
    assert requeued.completed_at is None
    assert store.list_logs(job.id)[0].level is LogLevel.WARNING
    assert store.claim_next().id == job.id


def test_requeue_rejects_non_failed_jobs(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()

    with pytest.raises(InvalidTransitionError, match="Only failed jobs"):
        store.requeue_job(job.id)
    with pytest.raises(JobNotFoundError):
        store.requeue_job(999)


def test_list_jobs_filters_by_status(store: JobStore, enqueue_job) -> None:
    enqueue_job("a")
    enqueue_job("b")
    store.claim_next()

    assert [job.list_name for job in store.list_jobs()] == ["b", "a"]
    assert [job.list_name for job in store.list_jobs(status=JobStatus.PENDING)] == ["b"]


def test_open_job_store_fails_fast_when_store_unreachable(tmp_path: Path) -> None:
    missing_dir = tmp_path / "missing" / "jobs.db"

    with pytest.raises(StoreUnavailableError, match="Job store unavailable"):
        open_job_store(missing_dir)


def test_update_status_can_require_an_already_claimed_job(store: JobStore, enqueue_job) -> None:
    job = enqueue_job()

    assert not store.update_status(
        job.id,
        JobStatus.PROCESSING,
        agent_session_key="k",
        from_statuses={JobStatus.PROCESSING},
    )
    assert store.get_job(job.id).status is JobStatus.PENDING
    assert store.get_job(job.id).agent_session_key is None

    store.claim_next()
    assert store.update_status(
        job.id,
        JobStatus.PROCESSING,
        agent_session_key="k",
        from_statuses={JobStatus.PROCESSING},
    )
    assert store.get_job(job.id).agent_session_key == "k"


def test_organizations_are_registered_and_toggled(store: JobStore) -> None:
    default = store.get_organization(1)
    assert default is not None
    assert default.slug == "default"
    assert default.is_active

    acme = store.add_organization(OrganizationCreate(name="Acme", slug="acme"))
    paused = store.set_organization_active(acme.id, is_active=False)

    assert not paused.is_active
    assert [organization.slug for organization in store.list_organizations()] == [
        "default",
        "acme",
    ]
    assert store.get_organization(999) is None


def test_duplicate_organization_slug_is_rejected(store: JobStore) -> None:
    store.add_organization(OrganizationCreate(name="Acme", slug="acme"))

    with pytest.raises(ValueError, match="Organization slug already exists: acme"):
        store.add_organization(OrganizationCreate(name="Acme Two", slug="acme"))


def test_toggling_unknown_organization_raises(store: JobStore) -> None:
    with pytest.raises(ValueError, match="Organization not found: 7"):
        store.set_organization_active(7, is_active=False)
