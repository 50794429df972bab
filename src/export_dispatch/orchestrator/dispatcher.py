"""Agent Executor dispatch: task templating, webhook submit, mailbox handoff."""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from collections.abc import Callable
from datetime import UTC, date, datetime
from pathlib import Path

import httpx

from export_dispatch.orchestrator.errors import OrganizationUnavailableError
from export_dispatch.orchestrator.mailbox import PickupOutcome, SpawnMailbox
from export_dispatch.orchestrator.models import (
    AgentTask,
    DispatchResult,
    JobStatus,
    JobView,
    LogLevel,
    OrganizationView,
    SpawnRequest,
)
from export_dispatch.orchestrator.repository import JobStore

logger = logging.getLogger(__name__)

CALLBACK_COMMAND = "export-dispatch"
NOT_PICKED_UP_ERROR = "Spawn request not picked up by agent coordinator"
OVERWRITTEN_ERROR = "Spawn request overwritten before pickup"

TASK_TEMPLATE = """Export the "{list_name}" list (Job #{job_id}).

## Rules
- Use the browser tool for every web interaction. Do not open browsers through shell commands.
- Read credentials from the configured credentials store. Never make them up.
- Export only records added to the list on {run_date}.

## Output
Save the exported CSV to: {output_path}
Count the data rows, excluding the header.

## Report back
When the export succeeds, run:
{callback} jobs complete --job-id {job_id} --result-file {quoted_output_path} --rows <row_count>

If anything goes wrong, run:
{callback} jobs fail --job-id {job_id} --error "<describe what went wrong>"
"""


def session_key_for(job_id: int) -> str:
    return f"export:job-{job_id}"


def export_output_path(
    export_root: Path,
    *,
    organization_slug: str,
    list_name: str,
    run_date: date,
) -> Path:
    """Deterministic per-day destination for one job's export file."""

    slug = re.sub(r"[^\w.-]+", "-", list_name.strip()).strip("-") or "list"
    return export_root / run_date.isoformat() / f"{organization_slug}-{slug}.csv"


def build_task(
    job: JobView,
    *,
    organization_slug: str,
    run_date: date,
    export_root: Path,
    callback_command: str = CALLBACK_COMMAND,
) -> AgentTask:
    """Render the Agent Executor task for ``job``. Pure."""

    output_path = export_output_path(
        export_root,
        organization_slug=organization_slug,
        list_name=job.list_name,
        run_date=run_date,
    )
    message = TASK_TEMPLATE.format(
        list_name=job.list_name,
        job_id=job.id,
        run_date=run_date.isoformat(),
        output_path=output_path,
        quoted_output_path=shlex.quote(str(output_path)),
        callback=callback_command,
    )
    return AgentTask(
        message=message,
        name=f"Export #{job.id}: {job.list_name}",
        session_key=session_key_for(job.id),
    )


class AgentGatewayClient:
    """Authenticated webhook client for the remote Agent Executor.

    Only ``202 Accepted`` counts as success, and it means the run was queued,
    not finished.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        request_timeout_seconds: float = 30.0,
        agent_timeout_seconds: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.agent_timeout_seconds = agent_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(request_timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def submit(self, task: AgentTask, *, model: str) -> DispatchResult:
        payload = {
            "message": task.message,
            "name": task.name,
            "sessionKey": task.session_key,
            "model": model,
            "wakeMode": "now",
            "deliver": True,
            "timeoutSeconds": self.agent_timeout_seconds,
        }
        logger.info("Calling agent webhook: session=%s model=%s", task.session_key, model)
        try:
            response = await self._client.post("/hooks/agent", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Agent webhook timed out for %s: %s", task.session_key, exc)
            return DispatchResult(accepted=False, error=f"Webhook timeout: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("Agent webhook error for %s: %s", task.session_key, exc)
            return DispatchResult(accepted=False, error=f"Webhook error: {exc}")

        if response.status_code == httpx.codes.ACCEPTED:
            return DispatchResult(
                accepted=True,
                session_key=task.session_key,
                status_code=response.status_code,
            )
        logger.warning(
            "Agent webhook rejected %s: HTTP %s",
            task.session_key,
            response.status_code,
        )
        return DispatchResult(
            accepted=False,
            status_code=response.status_code,
            error=f"Webhook failed: HTTP {response.status_code}: {response.text}",
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AgentGatewayClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


class Dispatcher:
    """Hands a job to the Agent Executor and records the outcome on the job row."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        export_root: Path,
        gateway: AgentGatewayClient | None = None,
        mailbox: SpawnMailbox | None = None,
        pickup_timeout_seconds: float = 5.0,
        pickup_poll_seconds: float = 0.5,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.store = store
        self.export_root = export_root
        self.gateway = gateway
        self.mailbox = mailbox
        self.pickup_timeout_seconds = pickup_timeout_seconds
        self.pickup_poll_seconds = pickup_poll_seconds
        self._today = today or (lambda: datetime.now(tz=UTC).date())
        # One outstanding request per process; the slot holds a single request.
        self._handoff_lock = asyncio.Lock()

    def build_task(self, job: JobView, organization: OrganizationView) -> AgentTask:
        return build_task(
            job,
            organization_slug=organization.slug,
            run_date=self._today(),
            export_root=self.export_root,
        )

    async def resolve_organization(self, job: JobView) -> OrganizationView:
        """Return the job's organization, or raise if it cannot receive exports."""

        organization = await asyncio.to_thread(self.store.get_organization, job.organization_id)
        if organization is None:
            raise OrganizationUnavailableError(f"Organization {job.organization_id} not found")
        if not organization.is_active:
            raise OrganizationUnavailableError(f"Organization {job.organization_id} is inactive")
        return organization

    async def dispatch(self, task: AgentTask, job: JobView, model: str) -> DispatchResult:
        """Submit ``task`` to the gateway.

        Acceptance records the session key and an info log and leaves the
        status alone. Anything else fails the job and bumps its retry count.
        """

        if self.gateway is None:
            raise RuntimeError("Direct dispatch requires an agent gateway client.")

        result = await self.gateway.submit(task, model=model)
        if not result.accepted:
            await self.record_failure(job.id, result.error or "Agent dispatch failed")
            return result

        await asyncio.to_thread(
            self.store.update_status,
            job.id,
            JobStatus.PROCESSING,
            agent_session_key=result.session_key,
            from_statuses={JobStatus.PROCESSING},
        )
        await asyncio.to_thread(
            self.store.append_log,
            job.id,
            LogLevel.INFO,
            f"Agent spawned via webhook (session: {result.session_key}, model: {model})",
        )
        logger.info("Agent accepted job #%s (session=%s)", job.id, result.session_key)
        return result

    async def relay(self, job: JobView, model: str) -> DispatchResult:
        """Deposit a spawn request and wait for the relay to take it.

        Handoffs from this dispatcher are serialized. A request replaced by
        another writer before pickup fails the job like a missed pickup.
        """

        if self.mailbox is None:
            raise RuntimeError("Mailbox handoff requires a spawn mailbox.")

        async with self._handoff_lock:
            request = SpawnRequest(
                job_id=job.id,
                list_name=job.list_name,
                model=model,
                timestamp=int(time.time() * 1000),
            )
            try:
                await asyncio.to_thread(self.mailbox.write, request)
            except OSError as error:
                message = f"Failed to create spawn request: {error}"
                await self.record_failure(job.id, message)
                return DispatchResult(accepted=False, error=message)
            logger.info("Spawn request written for job #%s", job.id)

            outcome = await self.mailbox.wait_for_pickup(
                job.id,
                timeout_seconds=self.pickup_timeout_seconds,
                poll_interval_seconds=self.pickup_poll_seconds,
            )

        if outcome is PickupOutcome.OVERWRITTEN:
            await self.record_failure(job.id, OVERWRITTEN_ERROR)
            return DispatchResult(accepted=False, error=OVERWRITTEN_ERROR)
        if outcome is PickupOutcome.TIMED_OUT:
            await self.record_failure(job.id, NOT_PICKED_UP_ERROR)
            return DispatchResult(accepted=False, error=NOT_PICKED_UP_ERROR)

        logger.info("Spawn request for job #%s picked up by agent manager", job.id)
        return DispatchResult(accepted=True)

    async def record_failure(self, job_id: int, error: str) -> None:
        logger.error("Job #%s dispatch failed: %s", job_id, error)
        await asyncio.to_thread(self.store.increment_retry, job_id)
        await asyncio.to_thread(
            self.store.update_status,
            job_id,
            JobStatus.FAILED,
            error_message=error,
        )
        await asyncio.to_thread(self.store.append_log, job_id, LogLevel.ERROR, error)
