# SPDX-License-Identifier: Apache-2.0
"""Test doubles shared by the orchestrator tests.

`ScriptedProvider` replays canned model replies, one per `stream()` call,
splitting text and tool-call arguments across several chunks the way a real
streaming API does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from fleetpilot.config import AgenticConfigService
from fleetpilot.model_gateway.base import ChatChunk, ChatParams, LLMMessage, ToolCallDelta, ToolSpec
from fleetpilot.model_gateway.router import ProviderRouter


@dataclass
class Reply:
    text: str = ""
    tool_calls: Sequence[Tuple[str, str]] = ()
    error: Optional[Exception] = None


def say(text: str) -> Reply:
    return Reply(text=text)


def use(*calls: Tuple[str, str], text: str = "") -> Reply:
    return Reply(text=text, tool_calls=calls)


def fail(error: Exception) -> Reply:
    return Reply(error=error)


class ScriptedProvider:
    def __init__(self, replies: Iterable[Reply] = (), default: Optional[Reply] = None) -> None:
        self.replies: List[Reply] = list(replies)
        self.default = default or say("done")
        self.requests: List[List[LLMMessage]] = []
        self.offered_tools: List[List[str]] = []
        self._next_id = 0

    async def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolSpec] = (),
        params: Optional[ChatParams] = None,
    ) -> AsyncIterator[ChatChunk]:
        self.requests.append(list(messages))
        self.offered_tools.append([t.name for t in tools])
        reply = self.replies.pop(0) if self.replies else self.default
        if reply.error is not None:
            raise reply.error

        if reply.text:
            cut = max(1, len(reply.text) // 2)
            yield ChatChunk(delta=reply.text[:cut])
            if reply.text[cut:]:
                yield ChatChunk(delta=reply.text[cut:])

        for name, arguments in reply.tool_calls:
            self._next_id += 1
            call_id = f"call_{self._next_id}"
            cut = len(arguments) // 2
            yield ChatChunk(tool_calls=[ToolCallDelta(id=call_id, type="function", name=name, arguments=arguments[:cut])])
            yield ChatChunk(tool_calls=[ToolCallDelta(id=call_id, arguments=arguments[cut:])])

        yield ChatChunk(finish_reason="tool_calls" if reply.tool_calls else "stop")


def router_for(provider: Any, name: str = "scripted") -> ProviderRouter:
    router = ProviderRouter(default_provider=name)
    router.register(name, lambda model: provider)
    return router


def make_config(overrides: Optional[Dict[str, Any]] = None) -> AgenticConfigService:
    """Config isolated from the environment, with instant model retries and a quiet heartbeat."""
    values: Dict[str, Any] = {
        "ai.orchestrator.model-retry-backoff-sec": 0,
        "ai.orchestrator.heartbeat-interval-sec": 3600,
    }
    values.update(overrides or {})
    return AgenticConfigService(values, environ={})
