# SPDX-License-Identifier: Apache-2.0
"""Tests for the delegate_task and get_task_result tools.

Covers:
- Synchronous delegation and its tagged answer.
- Background delegation followed by result lookup.
- Rejection of unknown and primary personas.
- Registration, and that sub-agents are never offered the delegation tools.
"""

from __future__ import annotations

import asyncio
import re
from typing import Optional

import pytest

from fleetpilot.agents.background import BackgroundTaskManager
from fleetpilot.agents.definitions import AgentDefinition, AgentDefinitionRegistry, default_agent_definitions
from fleetpilot.orchestrator.subagent import SubAgentExecutor
from fleetpilot.runtime.registry import ToolRegistry
from fleetpilot.tools.delegation import DelegationTools, register_delegation_tools
from helpers import ScriptedProvider, fail, make_config, router_for, say

pytestmark = pytest.mark.asyncio


def _agents() -> AgentDefinitionRegistry:
    agents = AgentDefinitionRegistry()
    agents.register(AgentDefinition(name="chat", display_name="Chat", mode="primary"))
    agents.register(AgentDefinition(name="retired", description="old persona", enabled=False))
    return agents


def _delegation(provider: ScriptedProvider, tools: Optional[ToolRegistry] = None) -> DelegationTools:
    config = make_config()
    subagents = SubAgentExecutor(router_for(provider), tools or ToolRegistry(), config)
    return DelegationTools(BackgroundTaskManager(subagents, config), _agents())


async def _wait_for_status(delegation: DelegationTools, task_id: str, status: str) -> str:
    report = ""
    for _ in range(200):
        report = await delegation.get_task_result(task_id)
        if f"Status: {status}" in report:
            break
        await asyncio.sleep(0.01)
    return report


async def test_sync_delegation_returns_tagged_result() -> None:
    provider = ScriptedProvider([say("web-1 disk at 40%")])
    delegation = _delegation(provider)

    answer = await delegation.delegate_task("explore", "check disk on web-1", description="disk check")

    assert answer == '<task_result agent="explore">\nweb-1 disk at 40%\n</task_result>'
    assert provider.requests[0][0].content == "You inspect hosts and gather facts without changing anything."
    assert provider.requests[0][1].content == "check disk on web-1"


async def test_sync_delegation_without_text() -> None:
    delegation = _delegation(ScriptedProvider([say("")]))

    answer = await delegation.delegate_task("explore", "anything")

    assert answer == '<task_result agent="explore">\n(no result)\n</task_result>'


async def test_background_delegation_then_result() -> None:
    delegation = _delegation(ScriptedProvider([say("nginx is healthy")]))

    answer = await delegation.delegate_task("explore", "check nginx", background=True)

    match = re.search(r"Task ID: (task_[0-9a-f]{12})\.", answer)
    assert match is not None
    assert "get_task_result" in answer

    report = await _wait_for_status(delegation, match.group(1), "completed")
    lines = report.splitlines()
    assert lines[:3] == [f"Task ID: {match.group(1)}", "Agent: explore", "Status: completed"]
    assert lines[3].startswith("Completed at: ")
    assert lines[4:] == ["Result:", "nginx is healthy"]


async def test_background_failure_is_reported() -> None:
    delegation = _delegation(ScriptedProvider(default=fail(RuntimeError("provider down"))))

    answer = await delegation.delegate_task("explore", "check nginx", background=True)
    task_id = re.search(r"(task_[0-9a-f]{12})", answer).group(1)

    report = await _wait_for_status(delegation, task_id, "failed")
    assert "Status: failed" in report
    assert "provider down" in report


async def test_pending_task_asks_to_check_later() -> None:
    delegation = _delegation(ScriptedProvider([say("done")]))

    answer = await delegation.delegate_task("explore", "slow job", background=True)
    task_id = re.search(r"(task_[0-9a-f]{12})", answer).group(1)

    report = await delegation.get_task_result(task_id)
    assert "Status: pending" in report
    assert report.endswith("check again later.")


async def test_unknown_agent_lists_available_personas() -> None:
    delegation = _delegation(ScriptedProvider())

    with pytest.raises(ValueError) as info:
        await delegation.delegate_task("wizard", "do magic")

    message = str(info.value)
    assert "No enabled agent named 'wizard'" in message
    assert "explore(Read-only investigation persona.)" in message
    assert "execute(Generic persona for plan steps.)" in message
    assert "chat(" not in message
    assert "retired(" not in message


async def test_primary_agent_is_rejected() -> None:
    provider = ScriptedProvider()
    delegation = _delegation(provider)

    with pytest.raises(ValueError, match="Cannot delegate to primary agent 'chat'"):
        await delegation.delegate_task("chat", "take over")
    assert provider.requests == []


async def test_unknown_task_id() -> None:
    delegation = _delegation(ScriptedProvider())

    with pytest.raises(ValueError, match="Unknown task id 'task_missing'"):
        await delegation.get_task_result("task_missing")


async def test_registration_and_sub_agent_exclusion() -> None:
    tools = ToolRegistry()

    async def list_hosts() -> list:
        return []

    await tools.register("list_hosts", list_hosts)
    config = make_config()
    subagents = SubAgentExecutor(router_for(ScriptedProvider()), tools, config)
    await register_delegation_tools(tools, BackgroundTaskManager(subagents, config), AgentDefinitionRegistry())

    assert tools.names() == ["delegate_task", "get_task_result", "list_hosts"]
    assert tools.get("delegate_task").spec().parameters["required"] == ["agent_type", "prompt"]

    [execute] = [a for a in default_agent_definitions() if a.name == "execute"]
    assert list(subagents.tools_for(execute)) == ["list_hosts"]
