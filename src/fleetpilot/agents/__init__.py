# SPDX-License-Identifier: Apache-2.0
"""Sub-agent personas, background delegation and the plan reviewer."""

from .background import BackgroundTask, BackgroundTaskManager, BatchTaskRequest, TaskStatus
from .definitions import (
    EXECUTE_AGENT,
    PLANNER_AGENT,
    REVIEWER_AGENT,
    AgentDefinition,
    AgentDefinitionRegistry,
    ToolPermission,
    default_agent_definitions,
    permitted_tools,
)
from .reviewer import ReviewerAgent, build_review_prompt

__all__ = [
    "AgentDefinition",
    "AgentDefinitionRegistry",
    "BackgroundTask",
    "BackgroundTaskManager",
    "BatchTaskRequest",
    "EXECUTE_AGENT",
    "PLANNER_AGENT",
    "REVIEWER_AGENT",
    "ReviewerAgent",
    "TaskStatus",
    "ToolPermission",
    "build_review_prompt",
    "default_agent_definitions",
    "permitted_tools",
]
