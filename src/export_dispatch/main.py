"""CLI entrypoint for export-dispatch."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from export_dispatch import __version__
from export_dispatch.orchestrator.controllers import (
    JobCompleteCommand,
    JobCreateCommand,
    JobFailCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    OrchestratorCliController,
    OrchestratorRunCommand,
    OrganizationAddCommand,
    OrganizationToggleCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="export-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv("EXPORT_DISPATCH_LOG_LEVEL", "INFO"),
    show_default="INFO",
    help="Process log level (env: EXPORT_DISPATCH_LOG_LEVEL).",
)
def export_dispatch(log_level: str) -> None:
    """Export job queue and Agent Executor orchestration CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@export_dispatch.group()
def jobs() -> None:
    """Producer, operator, and Agent Executor callback commands."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--list-name", required=True, help="Name of the list to export.")
@click.option(
    "--organization-id",
    type=click.IntRange(min=1),
    default=None,
    help="Owning organization; defaults to EXPORT_DISPATCH_DEFAULT_ORG_ID.",
)
@click.option("--user-id", type=int, default=None, help="Requesting user id.")
@click.option(
    "--priority",
    type=int,
    default=0,
    show_default=True,
    help="Higher priority jobs are claimed first.",
)
def jobs_create(
    db_path: Path | None,
    list_name: str,
    organization_id: int | None,
    user_id: int | None,
    priority: int,
) -> None:
    """Enqueue a list export job."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.create_job,
            JobCreateCommand(
                db_path=db_path,
                list_name=list_name,
                organization_id=organization_id,
                user_id=user_id,
                priority=priority,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "processing", "completed", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs, newest first."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.list_jobs,
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
@click.option(
    "--log-limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max log entries to print.",
)
def jobs_inspect(db_path: Path | None, job_id: int, log_limit: int) -> None:
    """Inspect one job with its recent log stream."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.inspect_job,
            JobInspectCommand(db_path=db_path, job_id=job_id, log_limit=log_limit),
        ),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: int) -> None:
    """Cancel a job that has not been claimed yet."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.cancel_job,
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@jobs.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def jobs_requeue(db_path: Path | None, job_id: int) -> None:
    """Put a failed job back in the queue, keeping its retry count."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.requeue_job,
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@jobs.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
@click.option("--result-file", required=True, help="Path of the exported file.")
@click.option("--rows", type=int, required=True, help="Exported data rows.")
def jobs_complete(db_path: Path | None, job_id: int, result_file: str, rows: int) -> None:
    """Agent Executor callback: report a finished export."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.complete_job,
            JobCompleteCommand(
                db_path=db_path,
                job_id=job_id,
                result_file=result_file,
                rows=rows,
            ),
        ),
    )


@jobs.command("fail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
@click.option("--error", "error_message", required=True, help="What went wrong.")
def jobs_fail(db_path: Path | None, job_id: int, error_message: str) -> None:
    """Agent Executor callback: report a failed export."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.fail_job,
            JobFailCommand(db_path=db_path, job_id=job_id, error=error_message),
        ),
    )


@export_dispatch.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single poll tick and wait for its work to settle.",
)
def worker(db_path: Path | None, once: bool) -> None:
    """Run the queue consumer: claim, hand off, and monitor jobs."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.run_worker,
            OrchestratorRunCommand(db_path=db_path, once=once),
        ),
    )


@export_dispatch.command("agent-manager")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single poll tick and wait for its work to settle.",
)
def agent_manager(db_path: Path | None, once: bool) -> None:
    """Run the mailbox relay: forward spawn requests to the agent gateway."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.run_agent_manager,
            OrchestratorRunCommand(db_path=db_path, once=once),
        ),
    )


@export_dispatch.group()
def mailbox() -> None:
    """Spawn mailbox commands."""


@mailbox.command("show")
def mailbox_show() -> None:
    """Print the outstanding spawn request without consuming it."""

    _emit_lines(_call(ORCHESTRATOR_CONTROLLER.show_mailbox))


@export_dispatch.group()
def orgs() -> None:
    """Organization registry commands."""


@orgs.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Display name.")
@click.option("--slug", required=True, help="Unique slug used in export file names.")
def orgs_add(db_path: Path | None, name: str, slug: str) -> None:
    """Register an organization."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.add_organization,
            OrganizationAddCommand(db_path=db_path, name=name, slug=slug),
        ),
    )


@orgs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def orgs_list(db_path: Path | None) -> None:
    """List registered organizations."""

    _emit_lines(_call(ORCHESTRATOR_CONTROLLER.list_organizations, db_path))


@orgs.command("disable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--org-id", "organization_id", type=int, required=True, help="Organization id.")
def orgs_disable(db_path: Path | None, organization_id: int) -> None:
    """Stop dispatching jobs for an organization."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.toggle_organization,
            OrganizationToggleCommand(
                db_path=db_path,
                organization_id=organization_id,
                is_active=False,
            ),
        ),
    )


@orgs.command("enable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--org-id", "organization_id", type=int, required=True, help="Organization id.")
def orgs_enable(db_path: Path | None, organization_id: int) -> None:
    """Resume dispatching jobs for an organization."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.toggle_organization,
            OrganizationToggleCommand(
                db_path=db_path,
                organization_id=organization_id,
                is_active=True,
            ),
        ),
    )


def _call(handler: Callable[..., list[str]], *args: object) -> list[str]:
    try:
        return handler(*args)
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    export_dispatch()
