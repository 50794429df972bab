"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import date
from pathlib import Path

import pytest

from export_dispatch.orchestrator.models import JobCreate, JobView
from export_dispatch.orchestrator.repository import JobStore


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer env vars out of tests and point the mailbox at tmp_path."""

    for name in list(os.environ):
        if name.startswith("EXPORT_DISPATCH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EXPORT_DISPATCH_MAILBOX_PATH", str(tmp_path / "spawn-request.json"))


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[JobStore]:
    job_store = JobStore(tmp_path / "jobs.db")
    job_store.init_schema()
    try:
        yield job_store
    finally:
        job_store.close()


@pytest.fixture()
def enqueue_job(store: JobStore) -> Callable[..., JobView]:
    def _enqueue(list_name: str = "X", *, priority: int = 0, organization_id: int = 1) -> JobView:
        return store.enqueue(
            JobCreate(organization_id=organization_id, list_name=list_name, priority=priority),
        )

    return _enqueue


@pytest.fixture()
def run_date() -> date:
    return date(2026, 10, 17)
