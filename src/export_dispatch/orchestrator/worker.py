"""Polling orchestrators: the queue consumer and the mailbox relay."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from export_dispatch.orchestrator.dispatcher import Dispatcher
from export_dispatch.orchestrator.errors import (
    JobNotFoundError,
    MailboxPayloadError,
    OrganizationUnavailableError,
)
from export_dispatch.orchestrator.gate import ConcurrencyGate
from export_dispatch.orchestrator.mailbox import SpawnMailbox
from export_dispatch.orchestrator.models import (
    HandoffMode,
    JobStatus,
    JobView,
    LogLevel,
    SpawnRequest,
)
from export_dispatch.orchestrator.monitor import ProgressMonitor
from export_dispatch.orchestrator.repository import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestratorRunSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    dispatched: int = 0
    idle_ticks: int = 0
    errors: int = 0
    abandoned: int = 0


class PollingOrchestrator:
    """Single-loop poller that fans work out into gate-bounded tasks.

    Subclasses implement :meth:`tick`, which attempts one unit of work and
    returns True when it started something. Started work runs as a separate
    task so the loop keeps ticking; the gate slot is released when that task
    settles, however it settles.
    """

    role = "orchestrator"

    def __init__(
        self,
        *,
        store: JobStore,
        gate: ConcurrencyGate,
        poll_interval_seconds: float,
        shutdown_grace_seconds: float = 60.0,
        drain_log_interval_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.gate = gate
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.drain_log_interval_seconds = drain_log_interval_seconds
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def in_flight(self) -> frozenset[int]:
        return frozenset(self._tasks)

    async def tick(self) -> bool:
        raise NotImplementedError

    async def run(self, *, max_ticks: int | None = None) -> OrchestratorRunSummary:
        """Tick until stopped (or ``max_ticks`` reached), then drain in-flight work."""

        summary = OrchestratorRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                summary.ticks += 1
                try:
                    started = await self.tick()
                except Exception:
                    summary.errors += 1
                    logger.exception("%s poll tick failed; retrying next tick", self.role)
                else:
                    if started:
                        summary.dispatched += 1
                    else:
                        summary.idle_ticks += 1

                if max_ticks is not None and summary.ticks >= max_ticks:
                    await self.wait_idle()
                    break
                await self._sleep_with_stop(self.poll_interval_seconds)

            summary.abandoned = await self.drain()
        return summary

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.info("%s received %s; no new work will be started", self.role, signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    async def wait_idle(self) -> None:
        """Wait for all in-flight work to settle, or for a stop request."""

        while self._tasks and not self._stop_requested:
            await asyncio.sleep(0.1)

    async def drain(self) -> int:
        """Give in-flight work a grace period, then cancel what remains.

        Returns the number of abandoned jobs. Their rows stay ``processing``
        with no owner.
        """

        if not self._tasks:
            return 0

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_grace_seconds
        next_report = loop.time()
        while self.gate.active > 0 and loop.time() < deadline:
            if loop.time() >= next_report:
                logger.info(
                    "%s waiting for %s active job(s) to finish: %s",
                    self.role,
                    self.gate.active,
                    sorted(self.gate.held()),
                )
                next_report += self.drain_log_interval_seconds
            await asyncio.sleep(min(0.1, max(0.0, deadline - loop.time())))

        if not self._tasks:
            logger.info("%s: all in-flight jobs settled", self.role)
            return 0

        pending = list(self._tasks.values())
        abandoned = len(pending)
        logger.warning(
            "%s force shutdown: %s job(s) abandoned mid-flight: %s",
            self.role,
            abandoned,
            sorted(self._tasks),
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return abandoned

    def _spawn(self, job_id: int, work: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(work, name=f"{self.role}-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(functools.partial(self._settle, job_id))

    def _settle(self, job_id: int, task: asyncio.Task[None]) -> None:
        self._tasks.pop(job_id, None)
        self.gate.release(job_id)
        if task.cancelled():
            logger.warning("%s: job #%s task cancelled", self.role, job_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("%s: job #%s task crashed", self.role, job_id, exc_info=error)

    async def _sleep_with_stop(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while not self._stop_requested and loop.time() < deadline:
            await asyncio.sleep(min(0.1, max(0.0, deadline - loop.time())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass


class QueueConsumer(PollingOrchestrator):
    """Claims pending jobs, hands them to the Agent Executor, then watches them.

    A gate slot is held from claim until the monitor settles, so capacity
    bounds the number of live external agents.
    """

    role = "worker"

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        gate: ConcurrencyGate,
        dispatcher: Dispatcher,
        monitor: ProgressMonitor,
        model: str,
        handoff_mode: HandoffMode = HandoffMode.MAILBOX,
        poll_interval_seconds: float = 10.0,
        shutdown_grace_seconds: float = 60.0,
        drain_log_interval_seconds: float = 2.0,
    ) -> None:
        super().__init__(
            store=store,
            gate=gate,
            poll_interval_seconds=poll_interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
            drain_log_interval_seconds=drain_log_interval_seconds,
        )
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.model = model
        self.handoff_mode = handoff_mode

    async def tick(self) -> bool:
        if self.gate.is_full:
            logger.debug(
                "Worker at capacity (%s/%s); skipping claim",
                self.gate.active,
                self.gate.capacity,
            )
            return False

        job = await asyncio.to_thread(self.store.claim_next)
        if job is None:
            return False

        if not self.gate.try_acquire(job.id):
            # Re-queued and re-claimed while its previous run still holds a slot.
            await self.dispatcher.record_failure(job.id, "Job is already in flight on this worker")
            return False

        logger.info(
            "Claimed job #%s (%s), priority=%s, slots %s/%s",
            job.id,
            job.list_name,
            job.priority,
            self.gate.active,
            self.gate.capacity,
        )
        await asyncio.to_thread(
            self.store.append_log,
            job.id,
            LogLevel.INFO,
            "Job started - spawning AI agent",
        )
        self._spawn(job.id, self._execute(job))
        return True

    async def _execute(self, job: JobView) -> None:
        try:
            organization = await self.dispatcher.resolve_organization(job)
            if self.handoff_mode is HandoffMode.DIRECT:
                task = self.dispatcher.build_task(job, organization)
                result = await self.dispatcher.dispatch(task, job, self.model)
            else:
                result = await self.dispatcher.relay(job, self.model)
        except OrganizationUnavailableError as error:
            await self.dispatcher.record_failure(job.id, str(error))
            return
        except Exception as error:
            logger.exception("Dispatch of job #%s crashed", job.id)
            await self.dispatcher.record_failure(job.id, f"Dispatch crashed: {error}")
            return

        if not result.accepted:
            return
        outcome = await self.monitor.watch(job.id)
        logger.info("Job #%s monitor finished: %s", job.id, outcome.value)


class MailboxRelay(PollingOrchestrator):
    """Takes spawn requests from the mailbox and submits them to the gateway.

    A gate slot is held only for the duration of the webhook call.
    """

    role = "agent-manager"

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        gate: ConcurrencyGate,
        mailbox: SpawnMailbox,
        dispatcher: Dispatcher,
        default_model: str,
        poll_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 60.0,
        drain_log_interval_seconds: float = 2.0,
    ) -> None:
        super().__init__(
            store=store,
            gate=gate,
            poll_interval_seconds=poll_interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
            drain_log_interval_seconds=drain_log_interval_seconds,
        )
        self.mailbox = mailbox
        self.dispatcher = dispatcher
        self.default_model = default_model

    async def tick(self) -> bool:
        if self.gate.is_full:
            return False

        try:
            request = await asyncio.to_thread(self.mailbox.try_claim)
        except MailboxPayloadError as error:
            logger.error("Discarding malformed spawn request: %s", error)
            return False
        if request is None:
            return False

        logger.info(
            "Agent Manager picked up spawn request for job #%s (%s)",
            request.job_id,
            request.list_name,
        )
        if not self.gate.try_acquire(request.job_id):
            logger.warning("Job #%s is already being dispatched; request ignored", request.job_id)
            return False
        self._spawn(request.job_id, self._relay(request))
        return True

    async def _relay(self, request: SpawnRequest) -> None:
        job_id = request.job_id
        try:
            # Only rows already claimed by the queue consumer are forwarded.
            moved = await asyncio.to_thread(
                self.store.update_status,
                job_id,
                JobStatus.PROCESSING,
                from_statuses={JobStatus.PROCESSING},
            )
        except JobNotFoundError:
            logger.warning("Spawn request references unknown job #%s; ignored", job_id)
            return

        job = await asyncio.to_thread(self.store.get_job, job_id)
        if job is None:
            return
        if not moved:
            logger.warning(
                "Job #%s is %s; spawn request ignored",
                job_id,
                job.status.value,
            )
            await asyncio.to_thread(
                self.store.append_log,
                job_id,
                LogLevel.WARNING,
                f"Spawn request ignored: job is {job.status.value}",
            )
            return

        await asyncio.to_thread(
            self.store.append_log,
            job_id,
            LogLevel.INFO,
            "Agent Manager picked up spawn request",
        )
        model = request.model or self.default_model
        try:
            organization = await self.dispatcher.resolve_organization(job)
            task = self.dispatcher.build_task(job, organization)
            await self.dispatcher.dispatch(task, job, model)
        except OrganizationUnavailableError as error:
            await self.dispatcher.record_failure(job_id, str(error))
        except Exception as error:
            logger.exception("Relay of job #%s crashed", job_id)
            await self.dispatcher.record_failure(job_id, f"Dispatch crashed: {error}")
