"""Producer-side use cases for the export job queue."""

from __future__ import annotations

import re
from dataclasses import dataclass

from export_dispatch.orchestrator.models import (
    JobCreate,
    JobView,
    OrganizationCreate,
    OrganizationView,
)
from export_dispatch.orchestrator.repository import JobStore

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")


@dataclass(slots=True)
class EnqueueExportJob:
    """High-level command to request one list export."""

    list_name: str
    organization_id: int | None = None
    user_id: int | None = None
    priority: int = 0


class ExportJobService:
    """Validates producer input and inserts pending jobs."""

    def __init__(self, *, store: JobStore, default_organization_id: int) -> None:
        self.store = store
        self.default_organization_id = default_organization_id

    def enqueue(self, command: EnqueueExportJob) -> JobView:
        list_name = command.list_name.strip()
        if not list_name:
            raise ValueError("List name is required.")
        organization_id = (
            command.organization_id
            if command.organization_id is not None
            else self.default_organization_id
        )
        if organization_id <= 0:
            raise ValueError(f"Organization id must be positive, got {organization_id}.")
        return self.store.enqueue(
            JobCreate(
                organization_id=organization_id,
                list_name=list_name,
                user_id=command.user_id,
                priority=command.priority,
            ),
        )


@dataclass(slots=True)
class RegisterOrganization:
    name: str
    slug: str


class OrganizationService:
    """Registers organizations and toggles whether their jobs may be dispatched."""

    def __init__(self, *, store: JobStore) -> None:
        self.store = store

    def register(self, command: RegisterOrganization) -> OrganizationView:
        name = command.name.strip()
        if not name:
            raise ValueError("Organization name is required.")
        slug = command.slug.strip().lower()
        if not SLUG_PATTERN.match(slug):
            raise ValueError(
                f"Organization slug must be lowercase letters, digits and dashes, got {slug!r}.",
            )
        return self.store.add_organization(OrganizationCreate(name=name, slug=slug))

    def set_active(self, organization_id: int, *, is_active: bool) -> OrganizationView:
        return self.store.set_organization_active(organization_id, is_active=is_active)
