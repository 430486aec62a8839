# SPDX-License-Identifier: Apache-2.0
"""Tests for the post-execution plan reviewer."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetpilot.agents.definitions import AgentDefinitionRegistry, default_agent_definitions
from fleetpilot.agents.reviewer import RESULT_PREVIEW_LIMIT, ReviewerAgent, build_review_prompt
from fleetpilot.planning.plan import ExecutionPlan
from helpers import make_config


def _executed_plan() -> ExecutionPlan:
    plan = ExecutionPlan.model_validate(
        {
            "summary": "Rotate nginx logs",
            "estimated_risk": "medium",
            "steps": [
                {"index": 1, "description": "rotate logs", "agent": "execute"},
                {"index": 2, "description": "check disk", "agent": "explore"},
            ],
        }
    )
    plan.steps[0].mark_running()
    plan.steps[0].mark_completed("x" * (RESULT_PREVIEW_LIMIT + 50))
    plan.steps[1].mark_running()
    plan.steps[1].mark_failed("host unreachable")
    return plan


# -- build_review_prompt --

def test_prompt_lists_each_step() -> None:
    prompt = build_review_prompt(_executed_plan(), "please rotate the logs")

    assert "## User request\nplease rotate the logs" in prompt
    assert "Estimated risk: MEDIUM" in prompt
    assert "### Step 1: rotate logs" in prompt
    assert "- status: completed" in prompt
    assert "...(truncated)" in prompt
    assert "x" * (RESULT_PREVIEW_LIMIT + 1) not in prompt
    assert "- error: host unreachable" in prompt
    assert prompt.rstrip().endswith("overall verdict.")


# -- ReviewerAgent --

@pytest.mark.asyncio
async def test_review_runs_reviewer_persona() -> None:
    subagents = MagicMock()
    subagents.run = AsyncMock(return_value="PASS overall")
    reviewer = ReviewerAgent(AgentDefinitionRegistry(), subagents, make_config())

    verdict = await reviewer.review(_executed_plan(), "rotate logs")

    assert verdict == "PASS overall"
    agent, prompt = subagents.run.await_args.args
    assert agent.name == "reviewer"
    assert "### Step 2: check disk" in prompt


@pytest.mark.asyncio
async def test_review_disabled_or_missing_persona() -> None:
    subagents = MagicMock()
    subagents.run = AsyncMock(return_value="PASS")

    disabled = ReviewerAgent(AgentDefinitionRegistry(), subagents, make_config({"ai.review.enabled": "false"}))
    assert await disabled.review(_executed_plan(), "x") is None

    personas = [d for d in default_agent_definitions() if d.name != "reviewer"]
    missing = ReviewerAgent(AgentDefinitionRegistry(personas), subagents, make_config())
    assert await missing.review(_executed_plan(), "x") is None
    subagents.run.assert_not_awaited()


@pytest.mark.asyncio
async def test_review_failure_yields_none() -> None:
    subagents = MagicMock()
    subagents.run = AsyncMock(side_effect=RuntimeError("model down"))
    reviewer = ReviewerAgent(AgentDefinitionRegistry(), subagents, make_config())
    assert await reviewer.review(_executed_plan(), "x") is None
