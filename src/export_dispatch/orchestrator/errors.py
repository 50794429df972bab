"""Error types raised by the orchestration core."""

from __future__ import annotations


class StoreUnavailableError(RuntimeError):
    """Job store cannot be reached; fatal when raised at startup."""


class JobNotFoundError(RuntimeError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """Producer or operator mutation requested from a disallowed status."""


class MailboxPayloadError(ValueError):
    """Spawn mailbox held content that is not a valid spawn request."""


class OrganizationUnavailableError(RuntimeError):
    """A job's organization is missing or inactive, so the job cannot be dispatched."""
