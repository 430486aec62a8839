# SPDX-License-Identifier: Apache-2.0
"""Unit tests for AgentEvent serialization and EventStream.

Scope:
- Discriminated-union round trip through JSON.
- Plan-carrying events snapshot the plan.
- Drop-oldest backpressure, close and cancel semantics.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from fleetpilot.planning.plan import ExecutionPlan, StepStatus
from fleetpilot.runtime.events import (
    ContentEvent,
    DoneEvent,
    EventStream,
    PlanEvent,
    StepStartEvent,
    ThinkingEvent,
    agent_event_adapter,
)

pytestmark = pytest.mark.asyncio


async def test_events_parse_back_by_type() -> None:
    event = StepStartEvent(step_index=2, description="restart nginx", agent="execute")
    parsed = agent_event_adapter.validate_json(event.model_dump_json())
    assert isinstance(parsed, StepStartEvent)
    assert parsed.step_index == 2

    thinking = agent_event_adapter.validate_python({"type": "thinking", "content": "hmm"})
    assert isinstance(thinking, ThinkingEvent)
    assert thinking.agent == "system"


async def test_plan_event_holds_a_snapshot() -> None:
    plan = ExecutionPlan.model_validate({"summary": "s", "steps": [{"index": 1}]})
    event = PlanEvent(plan=plan)

    plan.steps[0].mark_running()
    assert event.plan.steps[0].status is StepStatus.PENDING


async def test_full_stream_drops_oldest(caplog) -> None:
    stream = EventStream(maxsize=2)
    with caplog.at_level(logging.WARNING):
        for i in range(3):
            stream.emit(ContentEvent(content=str(i)))
    assert stream.dropped == 1
    assert "Dropped AgentEvent" in caplog.text
    assert [e.content for e in stream.drain()] == ["1", "2"]


async def test_iteration_ends_after_close_and_drain() -> None:
    stream = EventStream()

    async def produce() -> None:
        for i in range(3):
            stream.emit(ContentEvent(content=str(i)))
            await asyncio.sleep(0)
        stream.emit(DoneEvent(session_id="s"))
        stream.close()

    producer = asyncio.create_task(produce())
    seen = [e async for e in stream]
    await producer

    assert [e.type for e in seen] == ["content", "content", "content", "done"]
    stream.emit(ContentEvent(content="late"))
    assert len(stream) == 0


async def test_cancel_sets_flag_and_closes() -> None:
    stream = EventStream()
    stream.cancel()
    assert stream.cancelled and stream.closed
    assert [e async for e in stream] == []
