# SPDX-License-Identifier: Apache-2.0
"""Tools that hand work to sub-agent personas: `delegate_task` and `get_task_result`."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fleetpilot.agents.background import BackgroundTaskManager, TaskStatus
from fleetpilot.agents.definitions import AgentDefinition, AgentDefinitionRegistry
from fleetpilot.runtime.registry import ToolRegistry

logger = logging.getLogger(__name__)

PRIMARY_MODE = "primary"


class DelegationTools:
    """Delegation tool functions bound to a persona registry and a background task manager."""

    def __init__(self, manager: BackgroundTaskManager, agents: AgentDefinitionRegistry) -> None:
        self._manager = manager
        self._agents = agents

    def available_agents(self) -> List[str]:
        return [
            f"{a.name}({a.description or a.display_name or a.name})"
            for a in self._agents.all()
            if a.enabled and a.mode != PRIMARY_MODE
        ]

    def _resolve(self, agent_type: str) -> AgentDefinition:
        agent = self._agents.find_enabled(agent_type)
        if agent is None:
            raise ValueError(
                f"No enabled agent named '{agent_type}'. Available agents: {', '.join(self.available_agents())}"
            )
        if agent.mode == PRIMARY_MODE:
            raise ValueError(f"Cannot delegate to primary agent '{agent_type}'.")
        return agent

    async def delegate_task(
        self, agent_type: str, prompt: str, description: str = "", background: bool = False
    ) -> str:
        """Delegates a task to a sub-agent, either waiting for its answer or in the background."""
        agent = self._resolve(agent_type)
        logger.info(f"Delegating to '{agent.name}' (background={background}): {description or prompt[:80]}")

        if background:
            task_id = self._manager.submit(agent, prompt)
            return f"Background task submitted. Task ID: {task_id}. Use get_task_result to check on it."

        result = await self._manager.run(agent, prompt)
        return f'<task_result agent="{agent.name}">\n{result or "(no result)"}\n</task_result>'

    async def get_task_result(self, task_id: str) -> str:
        """Reports the status and outcome of a background task started with delegate_task."""
        task = self._manager.get(task_id)
        if task is None:
            raise ValueError(f"Unknown task id '{task_id}'.")

        lines = [f"Task ID: {task.task_id}", f"Agent: {task.agent_name}", f"Status: {task.status.value}"]
        if task.status is TaskStatus.COMPLETED:
            lines.append(f"Completed at: {task.completed_at.isoformat()}")
            lines.append(f"Result:\n{task.result or '(no result)'}")
        elif task.status is TaskStatus.FAILED:
            lines.append(f"Completed at: {task.completed_at.isoformat()}")
            lines.append(f"Error: {task.error}")
        else:
            lines.append("The task is still in progress; check again later.")
        return "\n".join(lines)


TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "delegate_task": {
        "type": "object",
        "properties": {
            "agent_type": {"type": "string", "description": "Name of the sub-agent persona to run."},
            "prompt": {"type": "string", "description": "Full task for the sub-agent, with the context it needs."},
            "description": {"type": "string", "description": "Short summary of the task."},
            "background": {
                "type": "boolean",
                "description": "Run in the background and return a task id instead of waiting.",
                "default": False,
            },
        },
        "required": ["agent_type", "prompt"],
    },
    "get_task_result": {
        "type": "object",
        "properties": {"task_id": {"type": "string", "description": "Task id returned by delegate_task."}},
        "required": ["task_id"],
    },
}


async def register_delegation_tools(
    registry: ToolRegistry, manager: BackgroundTaskManager, agents: AgentDefinitionRegistry
) -> DelegationTools:
    delegation = DelegationTools(manager, agents)
    for name in ("delegate_task", "get_task_result"):
        await registry.register(name, getattr(delegation, name), schema=TOOL_SCHEMAS[name])
    return delegation


__all__ = ["DelegationTools", "PRIMARY_MODE", "TOOL_SCHEMAS", "register_delegation_tools"]
