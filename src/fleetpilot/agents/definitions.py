# SPDX-License-Identifier: Apache-2.0
"""Sub-agent personas and their tool permissions.

A persona is resolved by name when a plan step, the planner or the reviewer
needs it. Unknown or disabled personas resolve to nothing; callers fall back
to the generic "execute" persona.

Permission rules are a list of ``{"tool": <name|*>, "action": "allow"|"deny"}``.
They may arrive as the JSON string persisted by the admin API; a rule set
that cannot be parsed allows every tool.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

PLANNER_AGENT = "planner"
EXECUTE_AGENT = "execute"
REVIEWER_AGENT = "reviewer"


class ToolPermission(BaseModel):
    tool: str = ""
    action: str = ""


class AgentDefinition(BaseModel):
    name: str
    display_name: str = ""
    mode: str = "subagent"
    permissions: Optional[List[ToolPermission]] = None
    model_provider: Optional[str] = None
    model_name: Optional[str] = None
    system_prompt: str = ""
    max_iterations: Optional[int] = 5
    enabled: bool = True
    description: str = ""

    @field_validator("permissions", mode="before")
    @classmethod
    def _parse_permissions(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, str):
            if not v.strip():
                return None
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse permissions JSON, allowing all tools: {e}")
                return None
        if not isinstance(v, list):
            logger.warning("Permissions must be a list of rules, allowing all tools")
            return None
        try:
            return [ToolPermission.model_validate(item) for item in v]
        except ValidationError as e:
            logger.warning(f"Invalid permission rule, allowing all tools: {e}")
            return None


def permitted_tools(permissions: Optional[List[ToolPermission]], names: Iterable[str]) -> List[str]:
    """Filters tool names by allow/deny rules; deny always wins, "*" allow admits everything."""
    names = list(names)
    if permissions is None:
        return names

    allow_all = False
    allowed: set[str] = set()
    denied: set[str] = set()
    for rule in permissions:
        if rule.tool == "*" and rule.action == "allow":
            allow_all = True
        elif rule.action == "allow":
            allowed.add(rule.tool)
        elif rule.action == "deny":
            denied.add(rule.tool)

    return [n for n in names if n not in denied and (allow_all or n in allowed)]


class AgentDefinitionRegistry:
    """In-memory persona store, seeded with the built-in personas."""

    def __init__(self, definitions: Optional[Iterable[AgentDefinition]] = None) -> None:
        self._definitions: Dict[str, AgentDefinition] = {}
        for d in definitions if definitions is not None else default_agent_definitions():
            self.register(d)

    def register(self, definition: AgentDefinition) -> None:
        self._definitions[definition.name] = definition

    def remove(self, name: str) -> None:
        self._definitions.pop(name, None)

    def find_enabled(self, name: Optional[str]) -> Optional[AgentDefinition]:
        if not name:
            return None
        definition = self._definitions.get(name)
        if definition is None or not definition.enabled:
            return None
        return definition

    def all(self) -> List[AgentDefinition]:
        return list(self._definitions.values())


def default_agent_definitions() -> List[AgentDefinition]:
    return [
        AgentDefinition(
            name=PLANNER_AGENT,
            display_name="Planner",
            mode="planner",
            permissions=[
                ToolPermission(tool="list_hosts", action="allow"),
                ToolPermission(tool="get_host_metrics", action="allow"),
                ToolPermission(tool="get_current_time", action="allow"),
            ],
            system_prompt=(
                "You plan fleet operations. If the request is simple, answer with ```json\n{}\n```. "
                "Otherwise answer with one ```json block holding an execution plan: summary, steps "
                "(index, description, agent, tools, hosts, depends_on, condition, checkpoint, "
                "parallel_group, on_failure, timeout_sec, input_vars, output_var), "
                "requires_confirmation and estimated_risk."
            ),
            max_iterations=3,
            description="Breaks a request into an execution plan.",
        ),
        AgentDefinition(
            name=EXECUTE_AGENT,
            display_name="Executor",
            permissions=[ToolPermission(tool="*", action="allow")],
            system_prompt="You carry out one operations task on the managed fleet and report the outcome.",
            max_iterations=15,
            description="Generic persona for plan steps.",
        ),
        AgentDefinition(
            name="explore",
            display_name="Explorer",
            permissions=[
                ToolPermission(tool="*", action="allow"),
                ToolPermission(tool="execute_script", action="deny"),
            ],
            system_prompt="You inspect hosts and gather facts without changing anything.",
            max_iterations=10,
            description="Read-only investigation persona.",
        ),
        AgentDefinition(
            name=REVIEWER_AGENT,
            display_name="Reviewer",
            permissions=[
                ToolPermission(tool="*", action="allow"),
                ToolPermission(tool="execute_script", action="deny"),
            ],
            system_prompt=(
                "You verify the results of an executed plan against the user's request and "
                "conclude with PASS, PARTIAL or FAIL."
            ),
            max_iterations=5,
            description="Verifies plan outcomes.",
        ),
    ]


__all__ = [
    "AgentDefinition",
    "AgentDefinitionRegistry",
    "EXECUTE_AGENT",
    "PLANNER_AGENT",
    "REVIEWER_AGENT",
    "ToolPermission",
    "default_agent_definitions",
    "permitted_tools",
]
