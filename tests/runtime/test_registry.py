# SPDX-License-Identifier: Apache-2.0
"""Unit tests for ToolRegistry.

Scope:
- Registration and name validation.
- Execution of sync and async tools from a JSON argument string.
- Result rendering and the per-request tool context.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from fleetpilot.exceptions import ToolNotFoundError, ToolRegistrationError
from fleetpilot.runtime.registry import (
    ToolContext,
    ToolRegistry,
    bind_tool_context,
    current_tool_context,
    reset_tool_context,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def registry() -> ToolRegistry:
    """Fresh ToolRegistry for every test."""
    return ToolRegistry()


# === registration ===

async def test_register_and_lookup(registry: ToolRegistry) -> None:
    def inc(a: int) -> int:
        """Adds one.

        Longer text that is not part of the description.
        """
        return a + 1

    await registry.register("inc", inc)
    assert registry.exists("inc")
    assert registry.names() == ["inc"]
    assert registry.get("inc").description == "Adds one."
    assert registry.specs()[0].name == "inc"


async def test_duplicate_and_invalid_names_rejected(registry: ToolRegistry) -> None:
    await registry.register("t", lambda: 1)
    with pytest.raises(ToolRegistrationError):
        await registry.register("t", lambda: 2)
    with pytest.raises(ToolRegistrationError):
        await registry.register("bad name", lambda: 3)
    with pytest.raises(ToolRegistrationError):
        await registry.register("x", "not callable")  # type: ignore[arg-type]


async def test_unregister_unknown_raises(registry: ToolRegistry) -> None:
    with pytest.raises(ToolNotFoundError):
        await registry.unregister("missing")


async def test_subset_ignores_unknown_names(registry: ToolRegistry) -> None:
    await registry.register("a", lambda: 1)
    await registry.register("b", lambda: 2)
    assert list(registry.subset(["b", "zzz"])) == ["b"]


# === execution ===

async def test_execute_async_tool_with_json_args(registry: ToolRegistry) -> None:
    async def double(a: int) -> int:
        await asyncio.sleep(0)
        return a * 2

    await registry.register("double", double)
    assert await registry.execute("double", '{"a": 21}') == "42"


async def test_execute_sync_tool_renders_structures(registry: ToolRegistry) -> None:
    def hosts() -> Any:
        return [{"id": "h1"}]

    await registry.register("hosts", hosts)
    assert await registry.execute("hosts") == '[{"id": "h1"}]'


async def test_execute_rejects_bad_arguments(registry: ToolRegistry) -> None:
    await registry.register("noop", lambda **kw: "ok")
    with pytest.raises(ValueError):
        await registry.execute("noop", "{broken")
    with pytest.raises(ValueError):
        await registry.execute("noop", "[1, 2]")
    assert await registry.execute("noop", "null") == "ok"


async def test_execute_unknown_tool(registry: ToolRegistry) -> None:
    with pytest.raises(ToolNotFoundError):
        await registry.execute("nope")


async def test_tool_context_reaches_sync_tools(registry: ToolRegistry) -> None:
    def targets() -> list:
        return list(current_tool_context().target_hosts)

    await registry.register("targets", targets)
    token = bind_tool_context(ToolContext(session_id="s1", target_hosts=("web-1", "web-2")))
    try:
        assert await registry.execute("targets") == '["web-1", "web-2"]'
    finally:
        reset_tool_context(token)
    assert current_tool_context().target_hosts == ()
