# SPDX-License-Identifier: Apache-2.0
"""Unit tests for ConfirmationManager.

Scope:
- Plan and checkpoint waits resolved by confirm, reject or timeout.
- Late and repeated answers are no-ops; registries never keep stale handles.
- Cancellation of the waiting task removes its handle.
- A set abandon event ends the wait early.
"""

from __future__ import annotations

import asyncio

import pytest

from fleetpilot.runtime.confirmation import ConfirmationManager, ConfirmationOutcome

pytestmark = pytest.mark.asyncio


@pytest.fixture
def manager() -> ConfirmationManager:
    return ConfirmationManager()


async def _waiting(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    await asyncio.sleep(0)
    return task


async def test_confirm_before_timeout(manager: ConfirmationManager) -> None:
    task = await _waiting(manager.wait_for_plan("s1", timeout=5))
    assert manager.has_pending_plan("s1")

    assert manager.confirm_plan("s1") is True
    assert await task is ConfirmationOutcome.CONFIRMED
    assert manager.pending_keys() == []


async def test_second_confirm_is_noop(manager: ConfirmationManager) -> None:
    task = await _waiting(manager.wait_for_plan("s1", timeout=5))
    assert manager.confirm_plan("s1") is True
    assert manager.confirm_plan("s1") is False
    assert manager.reject_plan("s1") is False
    assert (await task).approved is True


async def test_reject_plan(manager: ConfirmationManager) -> None:
    task = await _waiting(manager.wait_for_plan("s1", timeout=5))
    manager.reject_plan("s1")
    assert await task is ConfirmationOutcome.REJECTED


async def test_timeout_removes_handle(manager: ConfirmationManager) -> None:
    outcome = await manager.wait_for_plan("s1", timeout=0.01)
    assert outcome is ConfirmationOutcome.TIMED_OUT
    assert not outcome.approved
    assert not manager.has_pending_plan("s1")
    assert manager.confirm_plan("s1") is False


async def test_answer_without_wait_is_noop(manager: ConfirmationManager) -> None:
    assert manager.confirm_checkpoint("nobody", 1) is False
    assert manager.reject_plan("nobody") is False


async def test_checkpoints_are_keyed_per_step(manager: ConfirmationManager) -> None:
    first = await _waiting(manager.wait_for_checkpoint("s1", 1, timeout=5))
    second = await _waiting(manager.wait_for_checkpoint("s1", 2, timeout=5))
    plan = await _waiting(manager.wait_for_plan("s1", timeout=5))

    assert manager.reject_checkpoint("s1", 2) is True
    assert await second is ConfirmationOutcome.REJECTED
    assert not first.done()

    manager.confirm_checkpoint("s1", 1)
    manager.confirm_plan("s1")
    assert await first is ConfirmationOutcome.CONFIRMED
    assert await plan is ConfirmationOutcome.CONFIRMED


async def test_new_wait_replaces_pending_one(manager: ConfirmationManager) -> None:
    old = await _waiting(manager.wait_for_plan("s1", timeout=5))
    new = await _waiting(manager.wait_for_plan("s1", timeout=5))

    assert await old is ConfirmationOutcome.REJECTED
    manager.confirm_plan("s1")
    assert await new is ConfirmationOutcome.CONFIRMED
    assert manager.pending_keys() == []


async def test_cancelled_wait_is_removed(manager: ConfirmationManager) -> None:
    task = await _waiting(manager.wait_for_checkpoint("s1", 4, timeout=5))
    assert manager.has_pending_checkpoint("s1", 4)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not manager.has_pending_checkpoint("s1", 4)


# -- abandonment --

async def test_abandon_event_ends_wait_early(manager: ConfirmationManager) -> None:
    abandon = asyncio.Event()
    task = await _waiting(manager.wait_for_checkpoint("s1", 2, timeout=30, abandon=abandon))

    abandon.set()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome is ConfirmationOutcome.ABANDONED
    assert not outcome.approved
    assert not manager.has_pending_checkpoint("s1", 2)
    assert manager.confirm_checkpoint("s1", 2) is False


async def test_already_abandoned_wait_returns_at_once(manager: ConfirmationManager) -> None:
    abandon = asyncio.Event()
    abandon.set()
    outcome = await asyncio.wait_for(manager.wait_for_plan("s1", timeout=30, abandon=abandon), timeout=1)
    assert outcome is ConfirmationOutcome.ABANDONED
    assert manager.pending_keys() == []


async def test_answer_wins_over_unset_abandon_event(manager: ConfirmationManager) -> None:
    abandon = asyncio.Event()
    task = await _waiting(manager.wait_for_plan("s1", timeout=5, abandon=abandon))
    manager.confirm_plan("s1")
    assert await task is ConfirmationOutcome.CONFIRMED
