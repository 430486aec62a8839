# SPDX-License-Identifier: Apache-2.0
"""
Explicit tool registry with async execution support.

Tools are registered by name at startup from a fixed list; nothing is
discovered at runtime. The model calls a tool with a JSON object string and
always gets a string back.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from fleetpilot.exceptions import ToolNotFoundError, ToolRegistrationError
from fleetpilot.model_gateway.base import ToolSpec, render_tool_result

ToolCallable = Callable[..., Any]

_EMPTY_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ToolContext:
    """Per-request facts that tools may consult (bound for the duration of a turn)."""
    session_id: str = ""
    user_id: Optional[str] = None
    target_hosts: Tuple[str, ...] = ()


_tool_context: contextvars.ContextVar[ToolContext] = contextvars.ContextVar(
    "fleetpilot_tool_context", default=ToolContext()
)


def bind_tool_context(context: ToolContext) -> contextvars.Token:
    return _tool_context.set(context)


def reset_tool_context(token: contextvars.Token) -> None:
    _tool_context.reset(token)


def current_tool_context() -> ToolContext:
    return _tool_context.get()


@dataclass(frozen=True)
class ToolInfo:
    name: str
    callable: ToolCallable
    description: str = ""
    schema: Dict[str, Any] = field(default_factory=lambda: dict(_EMPTY_SCHEMA))
    is_coroutine: bool = False

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.schema)

    async def call(self, args_json: str) -> str:
        """Decodes the JSON arguments, invokes the tool and renders its result."""
        kwargs = _decode_arguments(self.name, args_json)
        if self.is_coroutine:
            result = await self.callable(**kwargs)
        else:
            result = await asyncio.to_thread(self.callable, **kwargs)
        return render_tool_result(result)


def _decode_arguments(name: str, args_json: str) -> Dict[str, Any]:
    if not args_json or not args_json.strip():
        return {}
    try:
        decoded = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON arguments for tool '{name}': {e.msg}") from e
    if decoded is None:
        return {}
    if not isinstance(decoded, dict):
        raise ValueError(f"Arguments for tool '{name}' must be a JSON object.")
    return decoded


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolInfo] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _validate_name(name: str) -> None:
        if not name or any(c.isspace() for c in name) or name.strip() != name:
            raise ToolRegistrationError("Tool name must be non-empty and without whitespace.")

    async def register(
        self,
        name: str,
        func: ToolCallable,
        *,
        description: str = "",
        schema: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not callable(func):
            raise ToolRegistrationError("Provided object is not callable.")

        self._validate_name(name)
        info = ToolInfo(
            name=name,
            callable=func,
            description=description or (inspect.getdoc(func) or "").split("\n", 1)[0],
            schema=schema or dict(_EMPTY_SCHEMA),
            is_coroutine=inspect.iscoroutinefunction(func),
        )

        async with self._lock:
            if name in self._tools:
                raise ToolRegistrationError(f"Tool '{name}' already registered.")
            self._tools[name] = info

    async def unregister(self, name: str) -> None:
        async with self._lock:
            if name not in self._tools:
                raise ToolNotFoundError(name)
            self._tools.pop(name)

    def get(self, name: str) -> ToolInfo:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def exists(self, name: str) -> bool:
        return name in self._tools

    def subset(self, names: Iterable[str]) -> Dict[str, ToolInfo]:
        """Name -> tool map restricted to `names`; unknown names are ignored."""
        return {n: self._tools[n] for n in names if n in self._tools}

    def specs(self, names: Optional[Iterable[str]] = None) -> List[ToolSpec]:
        selected = self.names() if names is None else [n for n in names if n in self._tools]
        return [self._tools[n].spec() for n in selected]

    async def execute(self, name: str, args_json: str = "") -> str:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return await self._tools[name].call(args_json)


__all__ = [
    "ToolContext",
    "ToolInfo",
    "ToolRegistry",
    "bind_tool_context",
    "current_tool_context",
    "reset_tool_context",
]
