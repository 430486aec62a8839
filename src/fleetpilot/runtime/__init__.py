# SPDX-License-Identifier: Apache-2.0
"""Runtime building blocks shared by the orchestrator: tools, events, confirmations."""

from .accumulator import ToolCallAccumulator
from .confirmation import ConfirmationManager, ConfirmationOutcome
from .events import AgentEvent, EventStream
from .registry import ToolContext, ToolRegistry, bind_tool_context, current_tool_context

__all__ = [
    "AgentEvent",
    "ConfirmationManager",
    "ConfirmationOutcome",
    "EventStream",
    "ToolCallAccumulator",
    "ToolContext",
    "ToolRegistry",
    "bind_tool_context",
    "current_tool_context",
]
