"""Controllers for export job CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from export_dispatch.config import Settings
from export_dispatch.orchestrator.dispatcher import AgentGatewayClient, Dispatcher
from export_dispatch.orchestrator.errors import JobNotFoundError
from export_dispatch.orchestrator.gate import ConcurrencyGate
from export_dispatch.orchestrator.mailbox import SpawnMailbox, encode_request
from export_dispatch.orchestrator.models import (
    HandoffMode,
    JobStatus,
    JobView,
    OrganizationView,
)
from export_dispatch.orchestrator.monitor import ProgressMonitor
from export_dispatch.orchestrator.repository import JobStore, open_job_store
from export_dispatch.orchestrator.services import (
    EnqueueExportJob,
    ExportJobService,
    OrganizationService,
    RegisterOrganization,
)
from export_dispatch.orchestrator.worker import (
    MailboxRelay,
    OrchestratorRunSummary,
    QueueConsumer,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for producer enqueue."""

    db_path: Path | None
    list_name: str
    organization_id: int | None
    user_id: int | None
    priority: int


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: int
    log_limit: int = 50


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for cancel/requeue operations."""

    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class JobCompleteCommand:
    """Agent Executor callback input for a successful export."""

    db_path: Path | None
    job_id: int
    result_file: str
    rows: int


@dataclass(slots=True)
class JobFailCommand:
    """Agent Executor callback input for a failed export."""

    db_path: Path | None
    job_id: int
    error: str


@dataclass(slots=True)
class OrganizationAddCommand:
    db_path: Path | None
    name: str
    slug: str


@dataclass(slots=True)
class OrganizationToggleCommand:
    db_path: Path | None
    organization_id: int
    is_active: bool


@dataclass(slots=True)
class OrchestratorRunCommand:
    """CLI input for running the worker or the agent manager."""

    db_path: Path | None
    once: bool


class OrchestratorCliController:
    """Coordinates queue, orchestrator, and inspection CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            service = ExportJobService(
                store=store,
                default_organization_id=settings.store.default_organization_id,
            )
            job = service.enqueue(
                EnqueueExportJob(
                    list_name=command.list_name,
                    organization_id=command.organization_id,
                    user_id=command.user_id,
                    priority=command.priority,
                ),
            )
        return [
            "Job enqueued: "
            f"job_id={job.id} list={job.list_name} org={job.organization_id} "
            f"priority={job.priority} status={job.status.value}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _job_store(settings) as store:
            jobs = store.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  #{job.id} list={job.list_name} status={job.status.value} "
                f"priority={job.priority} retries={job.retry_count}/{settings.store.max_retries} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            details = store.get_job_details(command.job_id, log_limit=command.log_limit)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: #{job.id}",
            f"List: {job.list_name}",
            f"Organization: {job.organization_id}",
            f"User: {job.user_id if job.user_id is not None else '-'}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Retries: {job.retry_count}/{settings.store.max_retries}",
            f"Started: {_format_time(job.started_at)}",
            f"Completed: {_format_time(job.completed_at)}",
            f"Session: {job.agent_session_key or '-'}",
            f"Result file: {job.result_file_path or '-'}",
            f"Rows: {job.row_count if job.row_count is not None else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Logs: {len(details.logs)}",
        ]
        for entry in details.logs:
            lines.append(
                f"  {entry.created_at.isoformat()} [{entry.level.value}] {entry.message}",
            )
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            store.cancel_job(command.job_id)
        return [f"Job cancelled: #{command.job_id}"]

    def requeue_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            job = store.requeue_job(command.job_id)
        lines = [f"Job re-queued: #{job.id} retries={job.retry_count}/{settings.store.max_retries}"]
        if job.retry_count >= settings.store.max_retries:
            lines.append("Retry limit reached: the job will not be claimed again.")
        return lines

    def complete_job(self, command: JobCompleteCommand) -> list[str]:
        if command.rows < 0:
            raise ValueError(f"Row count must be >= 0, got {command.rows}.")
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            recorded = store.complete_job(
                command.job_id,
                result_file_path=command.result_file,
                row_count=command.rows,
            )
            job = store.get_job(command.job_id)
        return [_callback_line(job_id=command.job_id, recorded=recorded, job=job)]

    def fail_job(self, command: JobFailCommand) -> list[str]:
        error = command.error.strip()
        if not error:
            raise ValueError("Error message is required.")
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            recorded = store.fail_job(command.job_id, error_message=error)
            job = store.get_job(command.job_id)
        return [_callback_line(job_id=command.job_id, recorded=recorded, job=job)]

    def add_organization(self, command: OrganizationAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            organization = OrganizationService(store=store).register(
                RegisterOrganization(name=command.name, slug=command.slug),
            )
        return [f"Organization registered: {_organization_line(organization)}"]

    def list_organizations(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _job_store(settings) as store:
            organizations = store.list_organizations()
        return [f"Organizations: {len(organizations)}"] + [
            f"  {_organization_line(organization)}" for organization in organizations
        ]

    def toggle_organization(self, command: OrganizationToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _job_store(settings) as store:
            organization = OrganizationService(store=store).set_active(
                command.organization_id,
                is_active=command.is_active,
            )
        return [f"Organization updated: {_organization_line(organization)}"]

    def run_worker(self, command: OrchestratorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_orchestrator()
        summary = asyncio.run(_run_worker(settings, once=command.once))
        return [_summary_line("Worker", summary)]

    def run_agent_manager(self, command: OrchestratorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_orchestrator()
        summary = asyncio.run(_run_agent_manager(settings, once=command.once))
        return [_summary_line("Agent manager", summary)]

    def show_mailbox(self) -> list[str]:
        settings = Settings.from_env()
        mailbox = SpawnMailbox(settings.mailbox.path)
        request = mailbox.peek()
        if request is None:
            return [f"Mailbox empty: {settings.mailbox.path}"]
        payload = encode_request(request)
        return [f"Mailbox: {settings.mailbox.path}"] + [
            f"  {key}={value}" for key, value in payload.items()
        ]


async def _run_worker(settings: Settings, *, once: bool) -> OrchestratorRunSummary:
    store = _open_orchestrator_store(settings)
    gateway: AgentGatewayClient | None = None
    try:
        if settings.mailbox.handoff_mode is HandoffMode.DIRECT:
            gateway = _gateway_client(settings)
        dispatcher = Dispatcher(
            store=store,
            export_root=settings.export_root,
            gateway=gateway,
            mailbox=SpawnMailbox(settings.mailbox.path),
            pickup_timeout_seconds=settings.mailbox.pickup_timeout_seconds,
        )
        consumer = QueueConsumer(
            store=store,
            gate=ConcurrencyGate(settings.worker.max_concurrent),
            dispatcher=dispatcher,
            monitor=ProgressMonitor(
                store=store,
                max_checks=settings.worker.monitor_checks,
                check_interval_seconds=settings.worker.monitor_interval_seconds,
            ),
            model=settings.gateway.default_model,
            handoff_mode=settings.mailbox.handoff_mode,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            shutdown_grace_seconds=settings.worker.shutdown_grace_seconds,
        )
        logger.info(
            "Export worker started: max_concurrent=%s poll=%ss handoff=%s model=%s",
            settings.worker.max_concurrent,
            settings.worker.poll_interval_seconds,
            settings.mailbox.handoff_mode.value,
            settings.gateway.default_model,
        )
        return await consumer.run(max_ticks=1 if once else None)
    finally:
        if gateway is not None:
            await gateway.aclose()
        store.close()


async def _run_agent_manager(settings: Settings, *, once: bool) -> OrchestratorRunSummary:
    store = _open_orchestrator_store(settings)
    mailbox = SpawnMailbox(settings.mailbox.path)
    try:
        async with _gateway_client(settings) as gateway:
            relay = MailboxRelay(
                store=store,
                gate=ConcurrencyGate(settings.worker.relay_max_concurrent),
                mailbox=mailbox,
                dispatcher=Dispatcher(
                    store=store,
                    export_root=settings.export_root,
                    gateway=gateway,
                ),
                default_model=settings.gateway.default_model,
                poll_interval_seconds=settings.worker.relay_poll_interval_seconds,
                shutdown_grace_seconds=settings.worker.shutdown_grace_seconds,
            )
            logger.info(
                "Agent manager started: max_concurrent=%s poll=%ss gateway=%s mailbox=%s",
                settings.worker.relay_max_concurrent,
                settings.worker.relay_poll_interval_seconds,
                settings.gateway.url,
                settings.mailbox.path,
            )
            return await relay.run(max_ticks=1 if once else None)
    finally:
        store.close()


def _open_orchestrator_store(settings: Settings) -> JobStore:
    # StoreUnavailableError here is fatal: the loop never starts.
    return open_job_store(
        settings.db_path,
        max_retries=settings.store.max_retries,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )


def _gateway_client(settings: Settings) -> AgentGatewayClient:
    return AgentGatewayClient(
        base_url=settings.gateway.url,
        token=settings.gateway.token,
        request_timeout_seconds=settings.gateway.request_timeout_seconds,
        agent_timeout_seconds=settings.gateway.agent_timeout_seconds,
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.isoformat()


def _callback_line(*, job_id: int, recorded: bool, job: JobView | None) -> str:
    if job is None:
        raise JobNotFoundError(job_id)
    if recorded:
        return f"Job #{job_id} recorded as {job.status.value}"
    return f"Job #{job_id} unchanged: status is already {job.status.value}"


def _organization_line(organization: OrganizationView) -> str:
    state = "active" if organization.is_active else "inactive"
    return f"#{organization.id} slug={organization.slug} name={organization.name} {state}"


def _summary_line(label: str, summary: OrchestratorRunSummary) -> str:
    return (
        f"{label} summary: "
        f"ticks={summary.ticks} dispatched={summary.dispatched} "
        f"idle_ticks={summary.idle_ticks} errors={summary.errors} "
        f"abandoned={summary.abandoned}"
    )


@contextmanager
def _job_store(settings: Settings) -> Iterator[JobStore]:
    store = JobStore(
        settings.db_path,
        max_retries=settings.store.max_retries,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
