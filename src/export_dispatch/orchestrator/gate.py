"""Per-process admission control for in-flight jobs."""

from __future__ import annotations


class ConcurrencyGate:
    """Bounded set of in-flight job ids owned by one orchestrator instance.

    The gate is never shared across processes: the queue consumer bounds
    external-agent slots, the mailbox relay bounds simultaneous webhook calls.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"Gate capacity must be >= 1, got {capacity}.")
        self.capacity = capacity
        self._held: set[int] = set()

    @property
    def active(self) -> int:
        return len(self._held)

    @property
    def is_full(self) -> bool:
        return len(self._held) >= self.capacity

    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._held

    def try_acquire(self, job_id: int) -> bool:
        """Take a slot for ``job_id``; False when full or already held."""

        if job_id in self._held or self.is_full:
            return False
        self._held.add(job_id)
        return True

    def release(self, job_id: int) -> None:
        self._held.discard(job_id)
