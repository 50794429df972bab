from pathlib import Path

import allure
from sqlalchemy import inspect, text

import export_dispatch
from export_dispatch.orchestrator.models import JobCreate
from export_dispatch.orchestrator.repository import JobStore
from export_dispatch.storage.alembic_runner import MIGRATIONS_DIR

pytestmark = [
    allure.epic("Export Queue"),
    allure.feature("Schema"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261017_0002"
    assert journal_mode == "wal"

    inspector = inspect(store.engine)
    assert {"export_jobs", "job_logs", "organizations"} <= set(inspector.get_table_names())
    index_names = {index["name"] for index in inspector.get_indexes("export_jobs")}
    assert "idx_export_jobs_queue" in index_names
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()
    store.close()


def test_deleting_a_job_cascades_to_its_logs(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "cascade.db")
    store.init_schema()
    job = store.enqueue(JobCreate(organization_id=1, list_name="X"))
    with store.engine.begin() as connection:
        connection.execute(text("DELETE FROM export_jobs WHERE id = :id"), {"id": job.id})

    assert store.list_logs(job.id) == []
    store.close()


def test_migrations_ship_inside_the_package() -> None:
    package_dir = Path(export_dispatch.__file__).resolve().parent

    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert (MIGRATIONS_DIR / "script.py.mako").is_file()
    assert sorted(path.name for path in (MIGRATIONS_DIR / "versions").glob("*.py")) == [
        "20261017_0001_export_jobs.py",
        "20261017_0002_organizations.py",
    ]


def test_default_organization_is_seeded(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "orgs.db")
    store.init_schema()

    organization = store.get_organization(1)

    assert organization is not None
    assert organization.slug == "default"
    assert organization.is_active
    store.close()
