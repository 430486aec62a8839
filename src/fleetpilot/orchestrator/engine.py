# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/orchestrator/engine.py

Project: fleetpilot

Description:
    Drives one user turn end to end and streams its progress as events.

Responsibilities
----------------
- `process(request)` starts the turn as its own task and yields events from
  a per-turn `EventStream`; closing the iterator cancels the turn.
- Turn sequence: session event, tool context binding, history with system
  prompt (and target-host context), task classification, memory retrieval,
  adaptive prompt, tool selection, heartbeat, SOP match or planner sub-loop,
  plan confirmation, plan execution with synthesis, otherwise the agentic
  loop. The turn always ends with DONE or a terminal ERROR.
- Agentic loop: stream a completion (retried once on failure), run tool
  calls strictly in order within the tool-call budget, feed back one
  aggregated tool turn, inject a reflection prompt after failures, stop on
  a text-only answer, on the consecutive-error threshold, or after
  `max_iterations`.

Notes
-----
The engine is process-scoped: its plan executors, semaphores and the
`ConfirmationManager` are shared by all concurrent turns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from typing import AsyncIterator, Dict, List, Optional, Sequence

from opentelemetry import trace

from fleetpilot.adaptive.classifier import TaskClassifier
from fleetpilot.adaptive.prompt_builder import AdaptivePromptBuilder
from fleetpilot.adaptive.retrieval import MemoryRetriever, SopRetriever, sop_to_plan
from fleetpilot.adaptive.tool_selector import ToolSetSelector
from fleetpilot.agents.background import BackgroundTaskManager
from fleetpilot.agents.definitions import PLANNER_AGENT, AgentDefinitionRegistry
from fleetpilot.agents.reviewer import ReviewerAgent
from fleetpilot.config import AgenticConfigService
from fleetpilot.model_gateway.base import LLMMessage, LLMProvider, ToolResponse, ToolSpec
from fleetpilot.model_gateway.router import ProviderRouter
from fleetpilot.planning.plan import ExecutionPlan, parse_plan_from_response
from fleetpilot.runtime.confirmation import ConfirmationManager, ConfirmationOutcome
from fleetpilot.runtime.events import (
    AgentEvent,
    ApprovalEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    EventStream,
    IterationStartEvent,
    MemoryRetrievedEvent,
    PlanAwaitConfirmationEvent,
    PlanConfirmedEvent,
    PlanEvent,
    PlanRejectedEvent,
    ReflectionEvent,
    SessionEvent,
    SopAppliedEvent,
    SopMatchedEvent,
    TaskClassifiedEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from fleetpilot.runtime.registry import (
    ToolContext,
    ToolInfo,
    ToolRegistry,
    bind_tool_context,
    reset_tool_context,
)

from .dag_executor import DagExecutor
from .plan_executor import PlanExecutor
from .prompts import (
    REFLECTION_PROMPT,
    SYNTHESIS_INSTRUCTION,
    TOOL_BUDGET_INSTRUCTION,
    TOOL_BUDGET_NOTICE,
    target_hosts_context,
    truncate_for_display,
)
from .request import OrchestratorRequest
from .subagent import ModelTurn, SubAgentExecutor, call_model

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

APPROVAL_PATTERN = re.compile(r"Submitted for manual approval\. Task ID:\s*(task_[a-zA-Z0-9]+)")
APPROVAL_DESCRIPTION = "A script needs manual approval before it runs on the fleet."


class OrchestratorEngine:
    def __init__(
        self,
        *,
        config: AgenticConfigService,
        providers: ProviderRouter,
        tools: ToolRegistry,
        agents: AgentDefinitionRegistry,
        confirmations: ConfirmationManager,
        memory: Optional[MemoryRetriever] = None,
        sops: Optional[SopRetriever] = None,
    ) -> None:
        self.config = config
        self.providers = providers
        self.tools = tools
        self.agents = agents
        self.confirmations = confirmations
        self.memory = memory
        self.sops = sops

        self.classifier = TaskClassifier()
        self.prompt_builder = AdaptivePromptBuilder(config)
        self.tool_selector = ToolSetSelector(config)
        self.subagents = SubAgentExecutor(providers, tools, config)
        self.background = BackgroundTaskManager(self.subagents, config)
        self.plan_executor = PlanExecutor(
            config,
            agents,
            self.subagents,
            ReviewerAgent(agents, self.subagents, config),
            DagExecutor(config, agents, self.subagents, confirmations),
        )

    async def process(self, request: OrchestratorRequest) -> AsyncIterator[AgentEvent]:
        """Runs one turn, yielding its events; closing the iterator cancels the turn."""
        stream = EventStream(self.config.get_int("ai.orchestrator.event-buffer-size", 256))
        task = asyncio.create_task(self.run_turn(request, stream), name=f"turn-{request.session_id}")
        try:
            async for event in stream:
                yield event
        finally:
            if not task.done():
                logger.info(f"Consumer left session {request.session_id}, cancelling turn")
                stream.cancel()
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def run_turn(self, request: OrchestratorRequest, stream: EventStream) -> None:
        """Executes the turn, publishing to `stream`; the stream is closed on return."""
        heartbeat: Optional[asyncio.Task] = None
        token = bind_tool_context(
            ToolContext(
                session_id=request.session_id,
                user_id=request.user_id,
                target_hosts=tuple(request.target_hosts),
            )
        )
        with tracer.start_as_current_span("orchestrator.turn") as span:
            span.set_attribute("fleetpilot.session_id", request.session_id)
            try:
                stream.emit(SessionEvent(session_id=request.session_id))
                provider = await self.providers.get_provider(request.provider, request.model)

                task_type = self.classifier.classify(request.message)
                stream.emit(TaskClassifiedEvent(task_type=task_type.value))
                memory = await self._retrieve_memory(request, stream)

                messages = self._build_history(
                    request, self.prompt_builder.build_prompt(task_type, memory, None)
                )
                names = self.tools.names() if request.enable_tools else []
                tools = self.tools.subset(self.tool_selector.select(task_type, names))

                heartbeat = asyncio.create_task(self._heartbeat(stream))

                plan = request.execution_plan or await self._match_sop(request, stream)
                if plan is None:
                    plan = await self._maybe_plan(request, provider, stream)

                if plan is not None:
                    request.execution_plan = plan
                    if not await self._confirm_plan(plan, request, stream):
                        return

                if stream.cancelled:
                    return

                if plan is not None and plan.steps:
                    await self._run_plan(plan, request, provider, tools, messages, stream)
                else:
                    await self._agentic_loop(request, provider, tools, messages, stream)
            except Exception as e:
                logger.error(f"Turn failed for session {request.session_id}: {e}", exc_info=True)
                span.record_exception(e)
                stream.emit(ErrorEvent(content=f"Orchestration failed: {e}"))
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await heartbeat
                reset_tool_context(token)
                stream.close()

    # --- context -------------------------------------------------------------

    def _build_history(self, request: OrchestratorRequest, system_prompt: str) -> List[LLMMessage]:
        messages = [LLMMessage.system(system_prompt)]
        if request.target_hosts:
            messages.append(LLMMessage.system(target_hosts_context(request.target_hosts)))
        messages.extend(request.history)
        messages.append(LLMMessage.user(request.message))
        return messages

    async def _retrieve_memory(self, request: OrchestratorRequest, stream: EventStream) -> Optional[str]:
        if self.memory is None or not request.message:
            return None
        try:
            memory = await self.memory.retrieve_relevant_memory(request.user_id, request.message)
        except Exception as e:
            logger.warning(f"Memory retrieval failed, continuing without it: {e}")
            return None
        if memory:
            stream.emit(MemoryRetrievedEvent(content=memory))
        return memory

    async def _match_sop(self, request: OrchestratorRequest, stream: EventStream) -> Optional[ExecutionPlan]:
        if self.sops is None or not self.config.get_bool("ai.sop.enabled", True):
            return None
        try:
            sop = await self.sops.find_matching_sop(request.message, request.user_id)
        except Exception as e:
            logger.warning(f"SOP lookup failed: {e}")
            return None
        if sop is None:
            return None

        stream.emit(SopMatchedEvent(title=sop.title))
        plan = sop_to_plan(sop)
        if plan is not None:
            stream.emit(SopAppliedEvent(sop_id=sop.id))
        return plan

    async def _heartbeat(self, stream: EventStream) -> None:
        interval = self.config.get_float("ai.orchestrator.heartbeat-interval-sec", 15.0)
        while not stream.closed:
            await asyncio.sleep(interval)
            if not stream.closed:
                stream.emit(ThinkingEvent(content="Processing...", agent="system"))

    # --- planning ------------------------------------------------------------

    def _should_plan(self, request: OrchestratorRequest) -> bool:
        if request.plan_confirmed or not self.config.get_bool("ai.planning.enabled", True):
            return False
        return len(request.message) >= self.config.get_int("ai.planning.min-message-length", 20)

    async def _maybe_plan(
        self, request: OrchestratorRequest, provider: LLMProvider, stream: EventStream
    ) -> Optional[ExecutionPlan]:
        if request.skip_planning:
            stream.emit(ThinkingEvent(content="Planning skipped for this request.", agent="system"))
            return None
        if not self._should_plan(request):
            return None

        planner = self.agents.find_enabled(PLANNER_AGENT)
        if planner is None:
            logger.debug("Planner persona not configured, skipping planning")
            return None

        stream.emit(ThinkingEvent(content="Analyzing the request and drafting a plan...", agent=PLANNER_AGENT))
        limit = planner.max_iterations or self.config.get_int("ai.planning.max-iterations", 3)
        try:
            text = await self.subagents.run(
                planner,
                request.message,
                stream=stream,
                label=PLANNER_AGENT,
                max_iterations=limit,
                provider=provider,
            )
        except Exception as e:
            logger.warning(f"Planning failed, falling back to the agentic loop: {e}", exc_info=True)
            stream.emit(ThinkingEvent(content=f"Planning failed, continuing without a plan: {e}", agent=PLANNER_AGENT))
            return None
        return parse_plan_from_response(text)

    async def _confirm_plan(self, plan: ExecutionPlan, request: OrchestratorRequest, stream: EventStream) -> bool:
        """Publishes the plan and, if needed, blocks for a human decision; False ends the turn."""
        stream.emit(PlanEvent(plan=plan))
        if not plan.requires_confirmation or request.plan_confirmed:
            return True

        stream.emit(PlanAwaitConfirmationEvent(plan=plan))
        timeout = self.config.get_int("ai.plan.confirmation-timeout", 300)
        outcome = await self.confirmations.wait_for_plan(request.session_id, timeout, abandon=stream.cancellation)

        if outcome is ConfirmationOutcome.ABANDONED:
            logger.info(f"Session {request.session_id} cancelled while awaiting plan confirmation")
            return False
        if outcome is ConfirmationOutcome.REJECTED:
            stream.emit(PlanRejectedEvent(session_id=request.session_id))
            stream.emit(DoneEvent(session_id=request.session_id))
            return False
        if outcome is ConfirmationOutcome.TIMED_OUT:
            stream.emit(ThinkingEvent(content=f"Plan confirmation timed out after {timeout}s.", agent="system"))
            stream.emit(DoneEvent(session_id=request.session_id))
            return False

        request.plan_confirmed = True
        stream.emit(PlanConfirmedEvent(session_id=request.session_id))
        return True

    async def _run_plan(
        self,
        plan: ExecutionPlan,
        request: OrchestratorRequest,
        provider: LLMProvider,
        tools: Dict[str, ToolInfo],
        messages: List[LLMMessage],
        stream: EventStream,
    ) -> None:
        results = await self.plan_executor.execute_plan(plan, request, stream)
        self._emit_approvals(results, stream)

        if results and not stream.cancelled and self.config.get_bool("ai.plan.synthesis-enabled", True):
            stream.emit(ThinkingEvent(content="Synthesizing step results...", agent="system"))
            messages.append(LLMMessage.assistant("Step results:\n\n" + results))
            messages.append(LLMMessage.user(SYNTHESIS_INSTRUCTION))
            await self._agentic_loop(request, provider, tools, messages, stream)
            return

        request.set_response(results)
        stream.emit(DoneEvent(session_id=request.session_id))

    # --- agentic loop --------------------------------------------------------

    def _budget(self, requested: int, key: str, default: int) -> int:
        return requested if requested > 0 else self.config.get_int(key, default)

    async def _call_model(
        self,
        provider: LLMProvider,
        messages: Sequence[LLMMessage],
        specs: Sequence[ToolSpec],
        stream: EventStream,
    ) -> ModelTurn:
        return await call_model(
            provider,
            messages,
            specs,
            backoff=self.config.get_float("ai.orchestrator.model-retry-backoff-sec", 1.0),
            on_text=lambda delta: stream.emit(ContentEvent(content=delta)),
            cancelled=lambda: stream.cancelled,
            on_retry=lambda error: stream.emit(ThinkingEvent(content="Model call failed, retrying...", agent="system")),
        )

    async def _agentic_loop(
        self,
        request: OrchestratorRequest,
        provider: LLMProvider,
        tools: Dict[str, ToolInfo],
        messages: List[LLMMessage],
        stream: EventStream,
    ) -> None:
        max_iterations = self._budget(request.max_iterations, "ai.orchestrator.max-iterations", 25)
        max_errors = self._budget(request.max_consecutive_errors, "ai.orchestrator.max-consecutive-errors", 3)
        max_tool_calls = self._budget(request.max_tool_calls, "ai.orchestrator.max-tool-calls", 30)
        specs = [t.spec() for t in tools.values()]

        answer: List[str] = []
        iteration = 0
        consecutive_errors = 0
        total_tool_calls = 0
        finished = False

        while iteration < max_iterations and not stream.cancelled:
            iteration += 1
            stream.emit(
                IterationStartEvent(
                    iteration=iteration,
                    max_iterations=max_iterations,
                    content=f"Iteration {iteration}/{max_iterations}",
                )
            )

            try:
                turn = await self._call_model(provider, messages, specs, stream)
            except Exception as e:
                logger.error(f"Model call failed for session {request.session_id}: {e}", exc_info=True)
                stream.emit(ErrorEvent(content=f"Model call failed: {e}"))
                finished = True
                break

            answer.append(turn.text)
            if not turn.tool_calls or stream.cancelled:
                finished = True
                break

            messages.append(LLMMessage.assistant(turn.text, turn.tool_calls))
            responses: List[ToolResponse] = []
            iteration_errors = 0

            for call in turn.tool_calls:
                if stream.cancelled:
                    break
                if total_tool_calls >= max_tool_calls:
                    notice = TOOL_BUDGET_NOTICE.format(limit=max_tool_calls)
                    stream.emit(ThinkingEvent(content=f"{notice} Skipping {call.name}.", agent="assistant"))
                    responses.append(ToolResponse(call.id, call.name, notice))
                    continue

                tool = tools.get(call.name)
                if tool is None:
                    content = f"Unknown tool: {call.name}"
                    logger.warning(f"Model requested unknown tool '{call.name}'")
                    stream.emit(ToolResultEvent(tool_name=call.name, tool_result=content))
                    responses.append(ToolResponse(call.id, call.name, content))
                    iteration_errors += 1
                    consecutive_errors += 1
                    continue

                total_tool_calls += 1
                stream.emit(ToolCallEvent(tool_name=call.name, tool_args=call.arguments))
                stream.emit(
                    ThinkingEvent(
                        content=f"Executing: {call.name} ({total_tool_calls}/{max_tool_calls})",
                        agent="assistant",
                    )
                )
                started = time.monotonic()
                try:
                    content = await tool.call(call.arguments)
                except Exception as e:
                    elapsed_ms = int((time.monotonic() - started) * 1000)
                    logger.warning(f"Tool '{call.name}' failed after {elapsed_ms}ms: {e}")
                    content = f"Tool execution failed: {e}"
                    stream.emit(ToolResultEvent(tool_name=call.name, tool_result=content))
                    iteration_errors += 1
                    consecutive_errors += 1
                else:
                    elapsed_ms = int((time.monotonic() - started) * 1000)
                    logger.info(f"Tool '{call.name}' completed in {elapsed_ms}ms")
                    stream.emit(ToolResultEvent(tool_name=call.name, tool_result=truncate_for_display(content)))
                    consecutive_errors = 0
                responses.append(ToolResponse(call.id, call.name, content))

            messages.append(LLMMessage.tool_results(responses))

            if iteration_errors and consecutive_errors:
                if consecutive_errors >= max_errors:
                    logger.warning(f"Session {request.session_id}: {consecutive_errors} consecutive tool errors, stopping")
                    stream.emit(ErrorEvent(content=f"Stopped after {consecutive_errors} consecutive tool errors."))
                    finished = True
                    break
                reflection = REFLECTION_PROMPT.format(errors=iteration_errors)
                messages.append(LLMMessage.system(reflection))
                stream.emit(ReflectionEvent(content=reflection))

            if total_tool_calls >= max_tool_calls:
                notice = TOOL_BUDGET_NOTICE.format(limit=max_tool_calls)
                messages.append(LLMMessage.system(notice + TOOL_BUDGET_INSTRUCTION))
                stream.emit(ThinkingEvent(content=notice, agent="assistant"))

        if not finished and not stream.cancelled:
            stream.emit(
                ThinkingEvent(content=f"Reached the maximum of {max_iterations} iterations.", agent="assistant")
            )

        text = "".join(answer)
        request.set_response(text)
        self._emit_approvals(text, stream)
        stream.emit(DoneEvent(session_id=request.session_id))

    @staticmethod
    def _emit_approvals(text: str, stream: EventStream) -> None:
        for match in APPROVAL_PATTERN.finditer(text or ""):
            stream.emit(ApprovalEvent(task_id=match.group(1), description=APPROVAL_DESCRIPTION, content=match.group(0)))


__all__ = ["APPROVAL_PATTERN", "OrchestratorEngine"]
