# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/agents/background.py

Project: fleetpilot

Description:
    Background execution of sub-agent personas for task delegation.

Notes:
  - At most ``ai.agent.background-pool-size`` tasks run at once; the rest wait
    for a slot with status ``pending``.
  - The per-task timeout (``ai.agent.task-timeout-sec``) counts from
    submission, so time spent waiting for a slot is included.
  - A finished task never changes again: a late result after a timeout or a
    cancel is discarded.
  - Batch waits give up after twice the default timeout and fail whatever is
    still outstanding.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from fleetpilot.config import AgenticConfigService

from .definitions import AgentDefinition

if TYPE_CHECKING:
    from fleetpilot.orchestrator.subagent import SubAgentExecutor

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackgroundTask:
    """Status record of one delegated sub-agent run."""
    task_id: str
    agent_name: str
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    host_id: Optional[str] = None
    step_index: Optional[int] = None
    _started: Optional[float] = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class BatchTaskRequest:
    agent: AgentDefinition
    prompt: str
    timeout_sec: int = 0
    host_id: Optional[str] = None
    step_index: Optional[int] = None


class BackgroundTaskManager:
    """Runs sub-agents as asyncio tasks under a concurrency bound and tracks their outcome."""

    def __init__(self, subagents: "SubAgentExecutor", config: AgenticConfigService) -> None:
        self._subagents = subagents
        self._tasks: Dict[str, BackgroundTask] = {}
        self._handles: Dict[str, asyncio.Task] = {}
        pool_size = max(1, config.get_int("ai.agent.background-pool-size", 5))
        self._slots = asyncio.Semaphore(pool_size)
        self.default_timeout_sec = config.get_int("ai.agent.task-timeout-sec", 120)
        logger.info(
            f"BackgroundTaskManager ready with pool size {pool_size}, default timeout {self.default_timeout_sec}s"
        )

    async def run(self, agent: AgentDefinition, prompt: str) -> str:
        """Runs `agent` in the caller's task and returns its answer."""
        return await self._subagents.run(agent, prompt)

    def submit(
        self,
        agent: AgentDefinition,
        prompt: str,
        timeout_sec: Optional[int] = None,
        *,
        host_id: Optional[str] = None,
        step_index: Optional[int] = None,
    ) -> str:
        """Starts `agent` in the background and returns the new task id.

        Args:
            agent: Persona to run.
            prompt: Task handed to the persona.
            timeout_sec: Seconds from submission before the task fails;
                None uses the default, zero or less disables the limit.
            host_id: Host the task concerns, kept for batch callers.
            step_index: Plan step the task belongs to, kept for batch callers.
        """
        timeout = self.default_timeout_sec if timeout_sec is None else timeout_sec
        task = BackgroundTask(
            task_id=new_task_id(), agent_name=agent.name, host_id=host_id, step_index=step_index
        )
        self._tasks[task.task_id] = task
        handle = asyncio.create_task(self._execute(task, agent, prompt, timeout), name=f"background-{task.task_id}")
        self._handles[task.task_id] = handle
        handle.add_done_callback(lambda _: self._handles.pop(task.task_id, None))
        logger.debug(f"Submitted background task {task.task_id} for agent '{agent.name}'")
        return task.task_id

    async def submit_batch_and_wait(self, requests: Iterable[BatchTaskRequest]) -> List[BackgroundTask]:
        """Submits every request, waits for all of them and returns their records in order."""
        task_ids = [
            self.submit(
                r.agent,
                r.prompt,
                r.timeout_sec if r.timeout_sec > 0 else None,
                host_id=r.host_id,
                step_index=r.step_index,
            )
            for r in requests
        ]
        handles = [self._handles[t] for t in task_ids if t in self._handles]
        deadline = self.default_timeout_sec * 2
        if handles:
            await asyncio.wait(handles, timeout=deadline if deadline > 0 else None)

        for task_id in task_ids:
            task = self._tasks[task_id]
            if not task.finished:
                self._finish(task, error="Batch wait deadline exceeded")
                handle = self._handles.get(task_id)
                if handle is not None:
                    handle.cancel()
        return [self._tasks[t] for t in task_ids]

    def get(self, task_id: str) -> Optional[BackgroundTask]:
        return self._tasks.get(task_id)

    def cancel(self, task_id: str) -> bool:
        """Fails a pending or running task; False when it is unknown or already finished."""
        task = self._tasks.get(task_id)
        if task is None or task.finished:
            return False
        self._finish(task, error="Cancelled by user")
        handle = self._handles.get(task_id)
        if handle is not None:
            handle.cancel()
        logger.info(f"Background task {task_id} cancelled")
        return True

    @staticmethod
    def aggregate_results(tasks: Iterable[BackgroundTask]) -> str:
        return "".join(
            f"[{t.agent_name}] {t.status.value}: {t.result if t.status is TaskStatus.COMPLETED else t.error}\n"
            for t in tasks
        )

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        logger.info(f"BackgroundTaskManager shut down, {len(handles)} task(s) cancelled")

    # --- internals -------------------------------------------------------------

    async def _execute(self, task: BackgroundTask, agent: AgentDefinition, prompt: str, timeout: int) -> None:
        try:
            if timeout > 0:
                await asyncio.wait_for(self._run_in_slot(task, agent, prompt), timeout)
            else:
                await self._run_in_slot(task, agent, prompt)
        except asyncio.TimeoutError:
            if not task.finished:
                logger.warning(f"Background task {task.task_id} ({agent.name}) timed out after {timeout}s")
            self._finish(task, error=f"Task timed out after {timeout}s")
        except asyncio.CancelledError:
            self._finish(task, error="Cancelled by user")
            raise
        except Exception as e:
            logger.error(f"Background task {task.task_id} ({agent.name}) failed: {e}", exc_info=True)
            self._finish(task, error=str(e))

    async def _run_in_slot(self, task: BackgroundTask, agent: AgentDefinition, prompt: str) -> None:
        async with self._slots:
            if task.finished:
                return
            task.status = TaskStatus.RUNNING
            task.started_at = _now()
            task._started = time.monotonic()
            result = await self._subagents.run(agent, prompt)
        if not task.finished:
            self._finish(task, result=result)
            logger.info(f"Background task {task.task_id} ({agent.name}) completed in {task.duration_ms}ms")

    @staticmethod
    def _finish(task: BackgroundTask, *, result: Optional[str] = None, error: Optional[str] = None) -> None:
        if task.finished:
            return
        task.status = TaskStatus.FAILED if error is not None else TaskStatus.COMPLETED
        task.result = result
        task.error = error
        task.completed_at = _now()
        if task._started is not None:
            task.duration_ms = int((time.monotonic() - task._started) * 1000)


__all__ = [
    "BackgroundTask",
    "BackgroundTaskManager",
    "BatchTaskRequest",
    "TaskStatus",
    "new_task_id",
]
