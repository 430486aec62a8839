# SPDX-License-Identifier: Apache-2.0
"""Post-execution review of a plan by the "reviewer" persona."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from fleetpilot.config import AgenticConfigService
from fleetpilot.planning.plan import ExecutionPlan

from .definitions import REVIEWER_AGENT, AgentDefinitionRegistry

if TYPE_CHECKING:
    from fleetpilot.orchestrator.subagent import SubAgentExecutor
    from fleetpilot.runtime.events import EventStream

logger = logging.getLogger(__name__)

RESULT_PREVIEW_LIMIT = 1000


def build_review_prompt(plan: ExecutionPlan, user_message: str) -> str:
    lines: List[str] = [
        "Review the execution of the plan below.",
        "",
        f"## User request\n{user_message}",
        "",
        f"## Plan\n{plan.summary}",
        f"Estimated risk: {plan.estimated_risk.value}",
        "",
        "## Step results",
    ]
    for step in plan.steps:
        lines.append(f"### Step {step.index}: {step.description}")
        lines.append(f"- agent: {step.agent}")
        lines.append(f"- status: {step.status.value}")
        if step.result:
            result = step.result
            if len(result) > RESULT_PREVIEW_LIMIT:
                result = result[:RESULT_PREVIEW_LIMIT] + "...(truncated)"
            lines.append(f"- result: {result}")
        if step.error:
            lines.append(f"- error: {step.error}")
    lines += [
        "",
        "Use read-only tools to verify the key outcomes where possible. List each verification "
        "item with PASS, PARTIAL or FAIL, then give an overall verdict.",
    ]
    return "\n".join(lines)


class ReviewerAgent:
    __slots__ = ("_agents", "_subagents", "_config")

    def __init__(
        self,
        agents: AgentDefinitionRegistry,
        subagents: "SubAgentExecutor",
        config: AgenticConfigService,
    ) -> None:
        self._agents = agents
        self._subagents = subagents
        self._config = config

    async def review(
        self, plan: ExecutionPlan, user_message: str, stream: Optional["EventStream"] = None
    ) -> Optional[str]:
        """Returns the reviewer's verdict, or None if no review could be produced."""
        if not self._config.get_bool("ai.review.enabled", True):
            return None

        reviewer = self._agents.find_enabled(REVIEWER_AGENT)
        if reviewer is None:
            logger.debug("Reviewer persona not configured, skipping review")
            return None

        try:
            return await self._subagents.run(reviewer, build_review_prompt(plan, user_message), stream=stream)
        except Exception as e:
            logger.error(f"Plan review failed: {e}", exc_info=True)
            return None


__all__ = ["RESULT_PREVIEW_LIMIT", "ReviewerAgent", "build_review_prompt"]
