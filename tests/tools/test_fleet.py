# SPDX-License-Identifier: Apache-2.0
"""Tests for the fleet tools and the clock tool (fleet API mocked with respx).

Covers:
- Host listing and projection of host records.
- Default hosts taken from the bound tool context.
- Script execution output formatting and the manual-approval answer.
- Retry on transient connect errors, no retry on HTTP errors.
- Registration of the built-in tool set.
"""

from __future__ import annotations

import json
from contextlib import contextmanager

import httpx
import pytest
import pytest_asyncio
import respx

from fleetpilot.orchestrator.engine import APPROVAL_PATTERN
from fleetpilot.runtime.registry import ToolContext, ToolRegistry, bind_tool_context, reset_tool_context
from fleetpilot.tools import register_builtin_tools
from fleetpilot.tools.clock import get_current_time
from fleetpilot.tools.fleet import FleetClient, FleetTools

pytestmark = pytest.mark.asyncio

BASE = "http://fleet.test"


@pytest_asyncio.fixture
async def fleet():
    client = FleetClient(BASE, token="secret")
    yield FleetTools(client)
    await client.aclose()


@contextmanager
def selected_hosts():
    token = bind_tool_context(ToolContext(session_id="sess-1", target_hosts=("web-1", "web-2")))
    try:
        yield
    finally:
        reset_tool_context(token)


# -- list_hosts --

@respx.mock
async def test_list_hosts_projects_records(fleet: FleetTools) -> None:
    route = respx.get(f"{BASE}/api/hosts").mock(
        return_value=httpx.Response(
            200,
            json={"hosts": [{"id": "h1", "hostname": "web-1", "group": "web", "status": "online", "ip": "10.0.0.1"}]},
        )
    )

    hosts = await fleet.list_hosts(group="web")

    assert hosts == [{"id": "h1", "hostname": "web-1", "group": "web", "status": "online"}]
    request = route.calls.last.request
    assert request.url.params["group"] == "web"
    assert request.headers["Authorization"] == "Bearer secret"


# -- get_host_metrics --

@respx.mock
async def test_metrics_default_to_selected_hosts(fleet: FleetTools) -> None:
    route = respx.post(f"{BASE}/api/metrics/query").mock(
        return_value=httpx.Response(200, json={"web-1": {"cpu": 12.5}})
    )

    with selected_hosts():
        assert await fleet.get_host_metrics() == {"web-1": {"cpu": 12.5}}
    assert json.loads(route.calls.last.request.content) == {"hosts": ["web-1", "web-2"]}


async def test_metrics_without_any_hosts(fleet: FleetTools) -> None:
    with pytest.raises(ValueError):
        await fleet.get_host_metrics()


# -- execute_script --

@respx.mock
async def test_script_output_is_formatted(fleet: FleetTools) -> None:
    route = respx.post(f"{BASE}/api/scripts/execute").mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "completed",
                "results": [
                    {"host": "web-1", "exit_code": 0, "stdout": "up 3 days\n"},
                    {"host": "web-2", "exit_code": 1, "stderr": "permission denied\n"},
                ],
            },
        )
    )

    with selected_hosts():
        output = await fleet.execute_script("uptime", hosts=["web-1", "web-2"], timeout=30)

    assert output == "[web-1] exit=0\nup 3 days\n[web-2] exit=1\nstderr: permission denied"
    body = json.loads(route.calls.last.request.content)
    assert body == {"hosts": ["web-1", "web-2"], "script": "uptime", "timeout": 30, "session_id": "sess-1"}


@respx.mock
async def test_risky_script_waits_for_approval(fleet: FleetTools) -> None:
    respx.post(f"{BASE}/api/scripts/execute").mock(
        return_value=httpx.Response(200, json={"status": "pending_approval", "task_id": "task_9f2c"})
    )

    with selected_hosts():
        output = await fleet.execute_script("rm -rf /var/log/old")

    assert output == "Submitted for manual approval. Task ID: task_9f2c"
    assert APPROVAL_PATTERN.search(output).group(1) == "task_9f2c"


@respx.mock
async def test_script_without_output(fleet: FleetTools) -> None:
    respx.post(f"{BASE}/api/scripts/execute").mock(return_value=httpx.Response(200, json={"results": []}))
    with selected_hosts():
        assert await fleet.execute_script("true") == "Script finished with no output."


async def test_empty_script_is_rejected(fleet: FleetTools) -> None:
    with selected_hosts(), pytest.raises(ValueError):
        await fleet.execute_script("   ")


# -- transport behaviour --

@respx.mock
async def test_connect_errors_are_retried(fleet: FleetTools) -> None:
    route = respx.get(f"{BASE}/api/hosts").mock(
        side_effect=[httpx.ConnectError, httpx.Response(200, json=[])]
    )
    assert await fleet.list_hosts() == []
    assert route.call_count == 2


@respx.mock
async def test_http_errors_are_not_retried(fleet: FleetTools) -> None:
    route = respx.get(f"{BASE}/api/hosts").mock(return_value=httpx.Response(502))
    with pytest.raises(httpx.HTTPStatusError):
        await fleet.list_hosts()
    assert route.call_count == 1


# -- registration and clock --

async def test_builtin_tools_are_registered() -> None:
    registry = ToolRegistry()
    client = FleetClient(BASE)
    try:
        fleet = await register_builtin_tools(registry, client)
        assert fleet.client is client
        assert registry.names() == ["execute_script", "get_current_time", "get_host_metrics", "list_hosts"]
        assert registry.get("execute_script").schema["required"] == ["script"]
    finally:
        await client.aclose()


async def test_current_time() -> None:
    assert get_current_time().endswith("+00:00")
    with pytest.raises(ValueError):
        get_current_time("Mars/Olympus")
