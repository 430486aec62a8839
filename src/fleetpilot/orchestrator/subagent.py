# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/orchestrator/subagent.py

Project: fleetpilot

Description:
    Bounded tool-calling loop for one sub-agent persona. Plan steps, the
    planner and the reviewer all run through `SubAgentExecutor.run`.

Responsibilities
----------------
- Resolve the persona's model (its own provider/model override, otherwise
  the caller's provider, otherwise the router default).
- Offer only the tools the persona's permission rules admit.
- Loop: stream a completion (retried once on failure), run requested tools
  in order, feed the results back; stop on a text-only answer, after
  `max_iterations`, after too many consecutive tool errors, or when the turn
  is cancelled.

Notes
-----
A model call that still fails after its retry raises `SubAgentError`, so
the plan executors treat the step as failed and apply its failure strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from opentelemetry import trace
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from fleetpilot.agents.definitions import AgentDefinition, permitted_tools
from fleetpilot.config import AgenticConfigService
from fleetpilot.exceptions import SubAgentError
from fleetpilot.model_gateway.base import (
    LLMMessage,
    LLMProvider,
    ToolCall,
    ToolResponse,
    ToolSpec,
)
from fleetpilot.model_gateway.router import ProviderRouter
from fleetpilot.runtime.accumulator import ToolCallAccumulator
from fleetpilot.runtime.events import EventStream, ToolCallEvent, ToolResultEvent
from fleetpilot.runtime.registry import ToolInfo, ToolRegistry

from .prompts import truncate_for_display

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STOPPED_ON_ERRORS = "[Sub-agent stopped: too many consecutive errors]"

# Delegation stays with the main loop; sub-agents never start further sub-agents.
MAIN_LOOP_ONLY_TOOLS = frozenset({"delegate_task", "get_task_result"})


@dataclass
class ModelTurn:
    """Everything the model produced in one streamed response."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


async def stream_model_turn(
    provider: LLMProvider,
    messages: Sequence[LLMMessage],
    tools: Sequence[ToolSpec],
    *,
    on_text: Optional[Callable[[str], None]] = None,
    cancelled: Callable[[], bool] = lambda: False,
) -> ModelTurn:
    """Drains one streamed completion, merging tool-call fragments per call id."""
    accumulator = ToolCallAccumulator()
    parts: List[str] = []
    async for chunk in provider.stream(messages, tools=tools):
        if chunk.delta:
            parts.append(chunk.delta)
            if on_text is not None:
                on_text(chunk.delta)
        if chunk.tool_calls:
            accumulator.accumulate(chunk.tool_calls)
        if cancelled():
            break
    return ModelTurn(text="".join(parts), tool_calls=accumulator.get_completed())


async def call_model(
    provider: LLMProvider,
    messages: Sequence[LLMMessage],
    tools: Sequence[ToolSpec],
    *,
    backoff: float,
    on_text: Optional[Callable[[str], None]] = None,
    cancelled: Callable[[], bool] = lambda: False,
    on_retry: Optional[Callable[[Optional[BaseException]], None]] = None,
) -> ModelTurn:
    """`stream_model_turn` with one retry after `backoff` seconds; the second failure propagates."""

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(f"Model call failed, retrying: {error}")
        if on_retry is not None:
            on_retry(error)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(2),
        wait=wait_fixed(backoff),
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await stream_model_turn(provider, messages, tools, on_text=on_text, cancelled=cancelled)


class SubAgentExecutor:
    __slots__ = ("_providers", "_tools", "_config")

    def __init__(self, providers: ProviderRouter, tools: ToolRegistry, config: AgenticConfigService) -> None:
        self._providers = providers
        self._tools = tools
        self._config = config

    def tools_for(self, agent: AgentDefinition) -> Dict[str, ToolInfo]:
        names = [n for n in self._tools.names() if n not in MAIN_LOOP_ONLY_TOOLS]
        return self._tools.subset(permitted_tools(agent.permissions, names))

    async def _resolve_provider(self, agent: AgentDefinition, fallback: Optional[LLMProvider]) -> LLMProvider:
        if agent.model_provider:
            return await self._providers.get_provider(agent.model_provider, agent.model_name)
        if fallback is not None:
            return fallback
        return await self._providers.get_provider()

    async def run(
        self,
        agent: AgentDefinition,
        prompt: str,
        *,
        stream: Optional[EventStream] = None,
        label: Optional[str] = None,
        max_iterations: Optional[int] = None,
        provider: Optional[LLMProvider] = None,
    ) -> str:
        """Runs `agent` on `prompt` and returns the text it produced.

        Args:
            agent: Persona to run.
            prompt: The task handed to the persona as its user message.
            stream: The turn's event stream; its cancellation flag is honoured.
            label: When given, tool calls and results are published on `stream`
                under this agent label.
            max_iterations: Overrides the persona's own iteration cap.
            provider: Model to use when the persona has no override.
        """
        with tracer.start_as_current_span("subagent.run") as span:
            span.set_attribute("fleetpilot.agent", agent.name)

            llm = await self._resolve_provider(agent, provider)
            tools = self.tools_for(agent)
            specs = [t.spec() for t in tools.values()]

            limit = (
                max_iterations
                or agent.max_iterations
                or self._config.get_int("ai.subagent.max-iterations", 15)
            )
            max_errors = self._config.get_int("ai.orchestrator.max-consecutive-errors", 3)
            max_tool_calls = self._config.get_int("ai.orchestrator.max-tool-calls", 30)
            backoff = self._config.get_float("ai.orchestrator.model-retry-backoff-sec", 1.0)

            messages: List[LLMMessage] = [LLMMessage.system(agent.system_prompt), LLMMessage.user(prompt)]
            output: List[str] = []
            consecutive_errors = 0
            total_tool_calls = 0
            iteration = 0

            def cancelled() -> bool:
                return stream is not None and stream.cancelled

            while iteration < limit and not cancelled():
                iteration += 1
                try:
                    turn = await call_model(llm, messages, specs, backoff=backoff, cancelled=cancelled)
                except Exception as e:
                    logger.error(f"Sub-agent '{agent.name}' model call failed: {e}", exc_info=True)
                    span.record_exception(e)
                    raise SubAgentError(agent.name, str(e)) from e

                if not turn.tool_calls:
                    output.append(turn.text)
                    break

                messages.append(LLMMessage.assistant(turn.text, turn.tool_calls))
                responses: List[ToolResponse] = []
                for call in turn.tool_calls:
                    if cancelled():
                        break
                    if total_tool_calls >= max_tool_calls:
                        responses.append(
                            ToolResponse(call.id, call.name, f"Tool call limit reached ({max_tool_calls}).")
                        )
                        continue
                    total_tool_calls += 1

                    content, ok = await self._invoke(tools.get(call.name), call)
                    consecutive_errors = 0 if ok else consecutive_errors + 1
                    responses.append(ToolResponse(call.id, call.name, content))

                    if stream is not None and label is not None:
                        stream.emit(ToolCallEvent(tool_name=call.name, tool_args=call.arguments, agent=label))
                        stream.emit(
                            ToolResultEvent(tool_name=call.name, tool_result=truncate_for_display(content), agent=label)
                        )

                messages.append(LLMMessage.tool_results(responses))

                if consecutive_errors >= max_errors:
                    logger.warning(f"Sub-agent '{agent.name}' stopped after {consecutive_errors} consecutive tool errors")
                    output.append(STOPPED_ON_ERRORS)
                    break

            span.set_attribute("fleetpilot.iterations", iteration)
            logger.info(f"Sub-agent '{agent.name}' finished after {iteration} iteration(s), {total_tool_calls} tool call(s)")
            return "".join(output)

    @staticmethod
    async def _invoke(tool: Optional[ToolInfo], call: ToolCall) -> tuple[str, bool]:
        if tool is None:
            return f"Unknown tool: {call.name}", False
        try:
            return await tool.call(call.arguments), True
        except Exception as e:
            logger.warning(f"Tool '{call.name}' failed: {e}")
            return f"Error: {e}", False


__all__ = ["MAIN_LOOP_ONLY_TOOLS", "ModelTurn", "STOPPED_ON_ERRORS", "SubAgentExecutor", "call_model", "stream_model_turn"]
