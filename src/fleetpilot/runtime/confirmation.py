# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/runtime/confirmation.py

Project: fleetpilot

Description:
    Human-in-the-loop gates for plans and checkpoint steps.

Responsibilities
----------------
- Two independent registries of single-resolution wait handles: plan-level
  (keyed by session id) and checkpoint-level (keyed by session id + step).
- A waiter installs its handle, then blocks until a human confirms, rejects,
  or the timeout elapses. An optional `abandon` event (the turn's
  cancellation signal) ends the wait early with ABANDONED. Whichever happens
  first wins; the handle is removed from its registry on every exit path,
  including cancellation of the waiting turn.
- `confirm_*` / `reject_*` on a key with no pending handle are logged no-ops
  (the answer arrived after the window closed).

Notes
-----
One instance is created per process and shared by every turn. Handles are
asyncio futures, so all calls must come from the event loop that owns the
manager; the FastAPI gateway runs its handlers on that loop.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"

    @property
    def approved(self) -> bool:
        return self is ConfirmationOutcome.CONFIRMED


def checkpoint_key(session_id: str, step_index: int) -> str:
    return f"{session_id}:step:{step_index}"


class ConfirmationManager:
    __slots__ = ("_plans", "_checkpoints")

    def __init__(self) -> None:
        self._plans: Dict[str, asyncio.Future] = {}
        self._checkpoints: Dict[str, asyncio.Future] = {}

    # --- waiting -----------------------------------------------------------

    async def wait_for_plan(
        self, session_id: str, timeout: float, abandon: Optional[asyncio.Event] = None
    ) -> ConfirmationOutcome:
        return await self._wait(self._plans, session_id, timeout, "plan", abandon)

    async def wait_for_checkpoint(
        self, session_id: str, step_index: int, timeout: float, abandon: Optional[asyncio.Event] = None
    ) -> ConfirmationOutcome:
        return await self._wait(
            self._checkpoints, checkpoint_key(session_id, step_index), timeout, "checkpoint", abandon
        )

    async def _wait(
        self,
        registry: Dict[str, asyncio.Future],
        key: str,
        timeout: float,
        kind: str,
        abandon: Optional[asyncio.Event],
    ) -> ConfirmationOutcome:
        """Blocks until the handle for `key` resolves, `timeout` elapses or `abandon` is set."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        previous = registry.get(key)
        if previous is not None and not previous.done():
            logger.warning(f"Replacing pending {kind} confirmation for '{key}'; previous wait is rejected")
            previous.set_result(False)
        registry[key] = future

        watcher: Optional[asyncio.Task] = None
        waiters = {future}
        if abandon is not None:
            watcher = asyncio.ensure_future(abandon.wait())
            waiters.add(watcher)

        try:
            await asyncio.wait(waiters, timeout=max(0.0, timeout), return_when=asyncio.FIRST_COMPLETED)
        finally:
            if watcher is not None:
                watcher.cancel()
            if registry.get(key) is future:
                del registry[key]

        if future.done():
            return ConfirmationOutcome.CONFIRMED if future.result() else ConfirmationOutcome.REJECTED
        future.cancel()
        if abandon is not None and abandon.is_set():
            logger.info(f"{kind.capitalize()} confirmation for '{key}' abandoned, turn was cancelled")
            return ConfirmationOutcome.ABANDONED
        logger.info(f"{kind.capitalize()} confirmation for '{key}' timed out after {timeout}s")
        return ConfirmationOutcome.TIMED_OUT

    # --- resolving ---------------------------------------------------------

    def confirm_plan(self, session_id: str) -> bool:
        return self._resolve(self._plans, session_id, True, "plan")

    def reject_plan(self, session_id: str) -> bool:
        return self._resolve(self._plans, session_id, False, "plan")

    def confirm_checkpoint(self, session_id: str, step_index: int) -> bool:
        return self._resolve(self._checkpoints, checkpoint_key(session_id, step_index), True, "checkpoint")

    def reject_checkpoint(self, session_id: str, step_index: int) -> bool:
        return self._resolve(self._checkpoints, checkpoint_key(session_id, step_index), False, "checkpoint")

    @staticmethod
    def _resolve(registry: Dict[str, asyncio.Future], key: str, approved: bool, kind: str) -> bool:
        """Resolves the pending handle for `key`; returns False if nothing was pending."""
        future = registry.pop(key, None)
        if future is None or future.done():
            logger.warning(f"No pending {kind} confirmation for '{key}'")
            return False
        future.set_result(approved)
        return True

    # --- introspection -----------------------------------------------------

    def has_pending_plan(self, session_id: str) -> bool:
        return session_id in self._plans

    def has_pending_checkpoint(self, session_id: str, step_index: int) -> bool:
        return checkpoint_key(session_id, step_index) in self._checkpoints

    def pending_keys(self) -> List[str]:
        return sorted(self._plans) + sorted(self._checkpoints)


__all__ = ["ConfirmationManager", "ConfirmationOutcome", "checkpoint_key"]
