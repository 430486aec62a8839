# SPDX-License-Identifier: Apache-2.0
"""Built-in tools and their registration."""

from __future__ import annotations

from typing import Optional

from fleetpilot.runtime.registry import ToolRegistry

from . import clock
from .delegation import DelegationTools, register_delegation_tools
from .fleet import TOOL_SCHEMAS, FleetClient, FleetTools


async def register_builtin_tools(registry: ToolRegistry, client: Optional[FleetClient] = None) -> FleetTools:
    """Registers `get_current_time` and the fleet tools; returns the fleet tool set."""
    await registry.register("get_current_time", clock.get_current_time, schema=clock.SCHEMA)

    fleet = FleetTools(client or FleetClient())
    for name in ("list_hosts", "get_host_metrics", "execute_script"):
        await registry.register(name, getattr(fleet, name), schema=TOOL_SCHEMAS[name])
    return fleet


__all__ = ["DelegationTools", "FleetClient", "FleetTools", "register_builtin_tools", "register_delegation_tools"]
