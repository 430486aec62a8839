# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/runtime/events.py

Project: fleetpilot

Description:
    Live progress events of an orchestration turn and the bounded per-turn
    stream that carries them to a single consumer (UI, CLI, notifier).

Responsibilities
----------------
- `AgentEvent`: discriminated union (pydantic, keyed on `type`) with one
  frozen model per event kind, each holding only its own fields.
- `EventStream`: bounded buffer; when full the oldest event is dropped and
  the drop is logged. Live progress favours availability over completeness,
  so consumers must tolerate gaps. The stream also carries the turn's
  cooperative cancellation flag.

Notes
-----
Events that embed a plan take a deep copy at construction, so later step
mutations by an executor never leak into an already-emitted event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Annotated, AsyncIterator, Deque, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from fleetpilot.planning.plan import ExecutionPlan

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)


class _PlanCarrying(_Event):
    plan: ExecutionPlan

    @field_validator("plan", mode="after")
    @classmethod
    def _snapshot(cls, v: ExecutionPlan) -> ExecutionPlan:
        return v.model_copy(deep=True)


# --- session lifecycle ---------------------------------------------------

class SessionEvent(_Event):
    type: Literal["session"] = "session"
    session_id: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"
    session_id: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    content: str


class ThinkingEvent(_Event):
    type: Literal["thinking"] = "thinking"
    content: str
    agent: str = "system"


class ContentEvent(_Event):
    type: Literal["content"] = "content"
    content: str


class IterationStartEvent(_Event):
    type: Literal["iteration_start"] = "iteration_start"
    iteration: int
    max_iterations: int
    content: str = ""


class ReflectionEvent(_Event):
    type: Literal["reflection"] = "reflection"
    content: str


class ApprovalEvent(_Event):
    type: Literal["approval"] = "approval"
    task_id: str
    description: str
    content: str = ""


# --- tools -----------------------------------------------------------------

class ToolCallEvent(_Event):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    tool_args: str = ""
    agent: str = "assistant"


class ToolResultEvent(_Event):
    type: Literal["tool_result"] = "tool_result"
    tool_name: str
    tool_result: str = ""
    agent: str = "assistant"


# --- context -----------------------------------------------------------------

class TaskClassifiedEvent(_Event):
    type: Literal["task_classified"] = "task_classified"
    task_type: str


class MemoryRetrievedEvent(_Event):
    type: Literal["memory_retrieved"] = "memory_retrieved"
    content: str


class SopMatchedEvent(_Event):
    type: Literal["sop_matched"] = "sop_matched"
    title: str


class SopAppliedEvent(_Event):
    type: Literal["sop_applied"] = "sop_applied"
    sop_id: str


# --- plans -----------------------------------------------------------------

class PlanEvent(_PlanCarrying):
    type: Literal["plan"] = "plan"


class PlanAwaitConfirmationEvent(_PlanCarrying):
    type: Literal["plan_await_confirmation"] = "plan_await_confirmation"


class PlanConfirmedEvent(_Event):
    type: Literal["plan_confirmed"] = "plan_confirmed"
    session_id: str


class PlanRejectedEvent(_Event):
    type: Literal["plan_rejected"] = "plan_rejected"
    session_id: str


class PlanSummaryEvent(_PlanCarrying):
    type: Literal["plan_summary"] = "plan_summary"
    content: str


class ReviewStartEvent(_Event):
    type: Literal["review_start"] = "review_start"


class ReviewCompleteEvent(_Event):
    type: Literal["review_complete"] = "review_complete"
    content: str


# --- steps -----------------------------------------------------------------

class StepStartEvent(_Event):
    type: Literal["step_start"] = "step_start"
    step_index: int
    description: str
    agent: str


class StepCompleteEvent(_Event):
    type: Literal["step_complete"] = "step_complete"
    step_index: int
    agent: str


class StepRetryEvent(_Event):
    type: Literal["step_retry"] = "step_retry"
    step_index: int
    attempt: int
    max_retries: int
    content: str = ""


class StepCheckpointEvent(_Event):
    type: Literal["step_checkpoint"] = "step_checkpoint"
    step_index: int
    description: str


class StepConditionEvalEvent(_Event):
    type: Literal["step_condition_eval"] = "step_condition_eval"
    step_index: int
    condition: str
    result: bool


class VariableSetEvent(_Event):
    type: Literal["variable_set"] = "variable_set"
    name: str
    value: str


class ParallelStartEvent(_Event):
    type: Literal["parallel_start"] = "parallel_start"
    group: int
    total: int


class ParallelProgressEvent(_Event):
    type: Literal["parallel_progress"] = "parallel_progress"
    group: int
    completed: int
    total: int


class ParallelCompleteEvent(_Event):
    type: Literal["parallel_complete"] = "parallel_complete"
    group: int


AgentEvent = Annotated[
    Union[
        SessionEvent,
        DoneEvent,
        ErrorEvent,
        ThinkingEvent,
        ContentEvent,
        IterationStartEvent,
        ReflectionEvent,
        ApprovalEvent,
        ToolCallEvent,
        ToolResultEvent,
        TaskClassifiedEvent,
        MemoryRetrievedEvent,
        SopMatchedEvent,
        SopAppliedEvent,
        PlanEvent,
        PlanAwaitConfirmationEvent,
        PlanConfirmedEvent,
        PlanRejectedEvent,
        PlanSummaryEvent,
        ReviewStartEvent,
        ReviewCompleteEvent,
        StepStartEvent,
        StepCompleteEvent,
        StepRetryEvent,
        StepCheckpointEvent,
        StepConditionEvalEvent,
        VariableSetEvent,
        ParallelStartEvent,
        ParallelProgressEvent,
        ParallelCompleteEvent,
    ],
    Field(discriminator="type"),
]

agent_event_adapter: TypeAdapter = TypeAdapter(AgentEvent)


class EventStream:
    """Bounded single-consumer channel for one turn's events."""

    __slots__ = ("_buffer", "_maxsize", "_ready", "_closed", "_cancelled", "_cancel_signal", "dropped")

    def __init__(self, maxsize: int = 256) -> None:
        self._buffer: Deque[_Event] = deque()
        self._maxsize = max(1, maxsize)
        self._ready = asyncio.Event()
        self._closed = False
        self._cancelled = False
        self._cancel_signal = asyncio.Event()
        self.dropped = 0

    def emit(self, event: _Event) -> None:
        if self._closed:
            logger.debug(f"Event '{getattr(event, 'type', '?')}' emitted after stream close, ignored")
            return
        if len(self._buffer) >= self._maxsize:
            oldest = self._buffer.popleft()
            self.dropped += 1
            logger.warning(f"Dropped AgentEvent due to backpressure: {getattr(oldest, 'type', '?')}")
        self._buffer.append(event)
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def cancel(self) -> None:
        """Marks the turn cancelled; producers poll `cancelled` at every suspension point."""
        self._cancelled = True
        self._cancel_signal.set()
        self.close()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def cancellation(self) -> asyncio.Event:
        """Set once `cancel()` is called; lets blocking waits give up early."""
        return self._cancel_signal

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    async def __aiter__(self) -> AsyncIterator[_Event]:
        while True:
            while self._buffer:
                yield self._buffer.popleft()
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()

    def drain(self) -> list:
        """Returns and removes everything currently buffered (no waiting)."""
        items = list(self._buffer)
        self._buffer.clear()
        return items


__all__ = [
    "AgentEvent",
    "ApprovalEvent",
    "ContentEvent",
    "DoneEvent",
    "ErrorEvent",
    "EventStream",
    "IterationStartEvent",
    "MemoryRetrievedEvent",
    "ParallelCompleteEvent",
    "ParallelProgressEvent",
    "ParallelStartEvent",
    "PlanAwaitConfirmationEvent",
    "PlanConfirmedEvent",
    "PlanEvent",
    "PlanRejectedEvent",
    "PlanSummaryEvent",
    "ReflectionEvent",
    "ReviewCompleteEvent",
    "ReviewStartEvent",
    "SessionEvent",
    "SopAppliedEvent",
    "SopMatchedEvent",
    "StepCheckpointEvent",
    "StepCompleteEvent",
    "StepConditionEvalEvent",
    "StepRetryEvent",
    "StepStartEvent",
    "TaskClassifiedEvent",
    "ThinkingEvent",
    "ToolCallEvent",
    "ToolResultEvent",
    "VariableSetEvent",
    "agent_event_adapter",
]
