# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/tools/fleet.py

Project: fleetpilot

Description:
    Fleet-management tools backed by the fleet API: host inventory, host
    metrics and script execution.

Env:
  - FLEET_API_URL (e.g. http://fleet-api:8090)
  - FLEET_API_TOKEN (optional bearer token)

Notes:
  - Transient transport errors (connect/read/pool timeouts) are retried with
    exponential backoff; HTTP error statuses are not.
  - When a call names no hosts, the target hosts selected on the current
    request are used.
  - Scripts the fleet API classifies as risky are parked for manual approval;
    the tool then answers ``Submitted for manual approval. Task ID: task_...``,
    which the orchestrator turns into an approval event.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from httpx import ConnectError, ConnectTimeout, PoolTimeout, ReadTimeout
from opentelemetry import trace
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fleetpilot.runtime.registry import current_tool_context

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FLEET_API_URL: str = os.getenv("FLEET_API_URL", "http://localhost:8090").rstrip("/")
FLEET_API_TOKEN: Optional[str] = os.getenv("FLEET_API_TOKEN")

HOSTS_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Host ids; defaults to the hosts selected for this conversation.",
}


class FleetClient:
    """Thin async client for the fleet API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        token = token if token is not None else FLEET_API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=(base_url or FLEET_API_URL).rstrip("/"),
            headers=headers,
            timeout=timeout or httpx.Timeout(connect=3.0, read=30.0, write=15.0, pool=3.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4.0),
        retry=retry_if_exception_type((ConnectError, ConnectTimeout, ReadTimeout, PoolTimeout)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        with tracer.start_as_current_span("fleet.request") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.route", path)
            try:
                resp = await self._client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
            except Exception as e:
                span.record_exception(e)
                raise


def _resolve_hosts(hosts: Optional[List[str]]) -> List[str]:
    if hosts:
        return list(hosts)
    return list(current_tool_context().target_hosts)


class FleetTools:
    """The fleet tools as coroutine methods, ready to be registered by name."""

    def __init__(self, client: FleetClient) -> None:
        self.client = client

    async def list_hosts(self, group: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lists managed hosts with their id, hostname, group and online status."""
        params = {"group": group} if group else None
        data = await self.client.request("GET", "/api/hosts", params=params)
        hosts = data.get("hosts", []) if isinstance(data, dict) else data
        return [
            {
                "id": h.get("id"),
                "hostname": h.get("hostname"),
                "group": h.get("group"),
                "status": h.get("status"),
            }
            for h in hosts
        ]

    async def get_host_metrics(self, hosts: Optional[List[str]] = None) -> Dict[str, Any]:
        """Returns current CPU, memory, disk and load metrics for the given hosts."""
        targets = _resolve_hosts(hosts)
        if not targets:
            raise ValueError("No hosts given and none selected for this conversation.")
        return await self.client.request("POST", "/api/metrics/query", json={"hosts": targets})

    async def execute_script(self, script: str, hosts: Optional[List[str]] = None, timeout: int = 60) -> str:
        """Runs a shell script on the given hosts; risky scripts wait for manual approval."""
        if not script or not script.strip():
            raise ValueError("Script must not be empty.")
        targets = _resolve_hosts(hosts)
        if not targets:
            raise ValueError("No hosts given and none selected for this conversation.")

        session_id = current_tool_context().session_id
        data = await self.client.request(
            "POST",
            "/api/scripts/execute",
            json={"hosts": targets, "script": script, "timeout": timeout, "session_id": session_id or None},
        )

        if data.get("status") == "pending_approval":
            task_id = data.get("task_id", "")
            logger.info(f"Script for {len(targets)} host(s) parked for approval as {task_id}")
            return f"Submitted for manual approval. Task ID: {task_id}"

        lines = []
        for item in data.get("results", []):
            lines.append(f"[{item.get('host')}] exit={item.get('exit_code')}")
            if item.get("stdout"):
                lines.append(item["stdout"].rstrip())
            if item.get("stderr"):
                lines.append(f"stderr: {item['stderr'].rstrip()}")
        return "\n".join(lines) or "Script finished with no output."


TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "list_hosts": {
        "type": "object",
        "properties": {"group": {"type": "string", "description": "Optional host group filter."}},
    },
    "get_host_metrics": {
        "type": "object",
        "properties": {"hosts": HOSTS_SCHEMA},
    },
    "execute_script": {
        "type": "object",
        "properties": {
            "script": {"type": "string", "description": "Shell script to run."},
            "hosts": HOSTS_SCHEMA,
            "timeout": {"type": "integer", "description": "Timeout in seconds.", "default": 60},
        },
        "required": ["script"],
    },
}


__all__ = ["FLEET_API_URL", "FleetClient", "FleetTools", "TOOL_SCHEMAS"]
