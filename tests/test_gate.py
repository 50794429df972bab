from __future__ import annotations

import allure
import pytest

from export_dispatch.orchestrator.gate import ConcurrencyGate

pytestmark = [
    allure.epic("Export Queue"),
    allure.feature("Concurrency Gate"),
]


def test_try_acquire_refuses_when_full_without_raising() -> None:
    gate = ConcurrencyGate(2)

    assert gate.try_acquire(1)
    assert gate.try_acquire(2)
    assert not gate.try_acquire(3)
    assert gate.active == 2
    assert gate.is_full
    assert 3 not in gate


def test_try_acquire_refuses_duplicate_ids() -> None:
    gate = ConcurrencyGate(3)

    assert gate.try_acquire(7)
    assert not gate.try_acquire(7)
    assert gate.active == 1


def test_release_frees_capacity_and_is_idempotent() -> None:
    gate = ConcurrencyGate(1)
    gate.try_acquire(1)

    gate.release(1)
    gate.release(1)

    assert gate.active == 0
    assert gate.try_acquire(2)
    assert gate.held() == frozenset({2})


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError, match="capacity must be >= 1"):
        ConcurrencyGate(0)
