"""Single-slot spawn mailbox shared by the queue consumer and the relay.

The slot is one JSON file at a well-known path: presence means a request is
outstanding, absence means none. Writes overwrite unconditionally, so two
dispatches racing on the slot lose the earlier request (last write wins).
A waiter watches for its own ``jobId`` and reports an overwrite when the
slot holds another job's request.
Claims rename the file to a private path before reading it, so a given
request is observed by at most one reader.
"""

from __future__ import annotations

import asyncio
import json
import os
from enum import Enum
from pathlib import Path
from uuid import uuid4

from export_dispatch.orchestrator.errors import MailboxPayloadError
from export_dispatch.orchestrator.models import SpawnRequest


class PickupOutcome(str, Enum):
    TAKEN = "taken"
    TIMED_OUT = "timed_out"
    OVERWRITTEN = "overwritten"


class SpawnMailbox:
    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, request: SpawnRequest) -> None:
        """Store ``request`` in the slot, replacing any unread request."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            staging.write_text(json.dumps(encode_request(request), indent=2), "utf-8")
            os.replace(staging, self.path)
        except OSError:
            staging.unlink(missing_ok=True)
            raise

    def is_pending(self) -> bool:
        return self.path.exists()

    def peek(self) -> SpawnRequest | None:
        """Read the outstanding request without consuming it."""

        try:
            raw = self.path.read_text("utf-8")
        except FileNotFoundError:
            return None
        return decode_request(raw)

    def try_claim(self) -> SpawnRequest | None:
        """Read and delete the outstanding request in one step."""

        claimed = self.path.with_name(f".{self.path.name}.{uuid4().hex}.claimed")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return None
        try:
            raw = claimed.read_text("utf-8")
        finally:
            claimed.unlink(missing_ok=True)
        return decode_request(raw)

    async def wait_for_pickup(
        self,
        job_id: int,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = 0.5,
    ) -> PickupOutcome:
        """Poll the slot until the request for ``job_id`` is taken or replaced."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            try:
                current = await asyncio.to_thread(self.peek)
            except MailboxPayloadError:
                return PickupOutcome.OVERWRITTEN
            if current is None:
                return PickupOutcome.TAKEN
            if current.job_id != job_id:
                return PickupOutcome.OVERWRITTEN
            remaining = deadline - loop.time()
            if remaining <= 0:
                return PickupOutcome.TIMED_OUT
            await asyncio.sleep(min(poll_interval_seconds, remaining))


def encode_request(request: SpawnRequest) -> dict[str, object]:
    return {
        "jobId": request.job_id,
        "listName": request.list_name,
        "model": request.model,
        "timestamp": request.timestamp,
    }


def decode_request(raw: str) -> SpawnRequest:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise MailboxPayloadError(f"Spawn request is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise MailboxPayloadError("Spawn request must be a JSON object.")

    job_id = payload.get("jobId")
    if isinstance(job_id, bool) or not isinstance(job_id, int):
        raise MailboxPayloadError(f"Spawn request has invalid jobId: {job_id!r}")
    list_name = payload.get("listName")
    if not isinstance(list_name, str) or not list_name.strip():
        raise MailboxPayloadError(f"Spawn request has invalid listName: {list_name!r}")
    model = payload.get("model")
    if model is not None and not isinstance(model, str):
        raise MailboxPayloadError(f"Spawn request has invalid model: {model!r}")
    timestamp = payload.get("timestamp", 0)
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise MailboxPayloadError(f"Spawn request has invalid timestamp: {timestamp!r}")

    return SpawnRequest(
        job_id=job_id,
        list_name=list_name,
        model=model or None,
        timestamp=timestamp,
    )
