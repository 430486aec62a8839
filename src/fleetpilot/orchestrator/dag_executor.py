# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/orchestrator/dag_executor.py

Project: fleetpilot

Description:
    Round-based scheduler for plans whose steps declare dependencies,
    conditions or checkpoints.

Responsibilities
----------------
- Refuse cyclic plans before running anything (one ERROR event).
- Each round: collect every pending step whose dependencies are all
  terminal, run them concurrently, wait for the whole round, repeat. The loop
  ends when nothing is ready, a step aborted, or the turn was cancelled.
- Per step: condition gate, human checkpoint, `${var}` substitution, sub-agent
  run under a timeout, output variable binding.
- Failure routing per `on_failure`: ``skip`` (dependents may proceed),
  ``goto:N`` (re-enable step N, bounded per target by
  `ai.dag.max-goto-resets`), anything else aborts the plan.

Notes
-----
Sub-agent runs share one process-wide semaphore of
`ai.dag.max-concurrent-steps` slots across all turns. Steps waiting on a
checkpoint do not hold a slot.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import DefaultDict, Dict, List

from opentelemetry import trace

from fleetpilot.agents.definitions import EXECUTE_AGENT, AgentDefinitionRegistry
from fleetpilot.config import AgenticConfigService
from fleetpilot.planning.conditions import StepState, evaluate
from fleetpilot.planning.plan import (
    ExecutionPlan,
    FailureAction,
    PlanStep,
    StepStatus,
    has_cycle,
    parse_failure_strategy,
    substitute_variables,
)
from fleetpilot.runtime.confirmation import ConfirmationManager, ConfirmationOutcome
from fleetpilot.runtime.events import (
    ErrorEvent,
    EventStream,
    StepCheckpointEvent,
    StepCompleteEvent,
    StepConditionEvalEvent,
    StepStartEvent,
    ThinkingEvent,
    VariableSetEvent,
)

from .prompts import build_sub_agent_prompt
from .request import OrchestratorRequest
from .subagent import SubAgentExecutor

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CYCLE_ERROR = "Plan contains a dependency cycle; no steps were executed."
VARIABLE_PREVIEW_LIMIT = 200


class _DagRun:
    """Mutable state of one plan execution."""

    __slots__ = ("plan", "states", "variables", "goto_resets")

    def __init__(self, plan: ExecutionPlan) -> None:
        self.plan = plan
        self.states: Dict[int, StepState] = {}
        self.variables: Dict[str, str] = {}
        self.goto_resets: DefaultDict[int, int] = defaultdict(int)

    def ready_steps(self) -> List[PlanStep]:
        ready = []
        for step in self.plan.steps:
            if step.status is not StepStatus.PENDING:
                continue
            if all(self._settled(dep) for dep in step.depends_on):
                ready.append(step)
        return ready

    def _settled(self, index: int) -> bool:
        dep = self.plan.step(index)
        return dep is not None and dep.status.is_terminal


class DagExecutor:
    __slots__ = ("_config", "_agents", "_subagents", "_confirmations", "_slots")

    def __init__(
        self,
        config: AgenticConfigService,
        agents: AgentDefinitionRegistry,
        subagents: SubAgentExecutor,
        confirmations: ConfirmationManager,
    ) -> None:
        self._config = config
        self._agents = agents
        self._subagents = subagents
        self._confirmations = confirmations
        self._slots = asyncio.Semaphore(max(1, config.get_int("ai.dag.max-concurrent-steps", 5)))

    async def execute(self, plan: ExecutionPlan, request: OrchestratorRequest, stream: EventStream) -> None:
        if has_cycle(plan):
            logger.warning(f"Rejected plan with a dependency cycle (session {request.session_id})")
            stream.emit(ErrorEvent(content=CYCLE_ERROR))
            return

        run = _DagRun(plan)
        rounds = 0
        while not stream.cancelled:
            ready = run.ready_steps()
            if not ready:
                pending = plan.count(StepStatus.PENDING)
                if pending:
                    logger.warning(f"DAG stalled with {pending} pending step(s) that can never become ready")
                break

            rounds += 1
            for step in ready:
                step.mark_running()
            logger.debug(f"DAG round {rounds}: dispatching steps {[s.index for s in ready]}")

            outcomes = await asyncio.gather(
                *(self._execute_step(step, run, request, stream) for step in ready),
                return_exceptions=True,
            )
            for step, outcome in zip(ready, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Step {step.index} crashed: {outcome}", exc_info=outcome)

            if plan.count(StepStatus.ABORTED):
                stream.emit(ThinkingEvent(content="Plan aborted after a step failure.", agent="system"))
                break

        logger.info(f"DAG finished after {rounds} round(s)")

    async def _execute_step(
        self, step: PlanStep, run: _DagRun, request: OrchestratorRequest, stream: EventStream
    ) -> None:
        with tracer.start_as_current_span("dag.step") as span:
            span.set_attribute("fleetpilot.session_id", request.session_id)
            span.set_attribute("fleetpilot.step_index", step.index)

            if step.condition and step.condition.strip():
                passed = evaluate(step.condition, run.states)
                stream.emit(StepConditionEvalEvent(step_index=step.index, condition=step.condition, result=passed))
                if not passed:
                    step.mark_skipped()
                    run.states[step.index] = StepState("skipped")
                    return

            if step.checkpoint and not await self._pass_checkpoint(step, run, request, stream):
                return

            step.description = substitute_variables(step.description, step.input_vars, run.variables)
            prompt = build_sub_agent_prompt(step, request.target_hosts)
            stream.emit(StepStartEvent(step_index=step.index, description=step.description, agent=step.agent))

            agent = self._agents.find_enabled(step.agent) or self._agents.find_enabled(EXECUTE_AGENT)
            if agent is None:
                step.mark_skipped()
                run.states[step.index] = StepState("skipped")
                stream.emit(ThinkingEvent(content=f"Step {step.index} skipped: no agent available", agent="system"))
                return
            span.set_attribute("fleetpilot.agent", agent.name)

            timeout = step.timeout_sec or self._config.get_int("ai.dag.step-timeout-sec", 300)
            try:
                async with self._slots:
                    result = await asyncio.wait_for(self._subagents.run(agent, prompt, stream=stream), timeout)
            except asyncio.TimeoutError:
                step.error = f"Step {step.index} timed out after {timeout}s"
                self._handle_failure(step, run, stream)
                return
            except Exception as e:
                logger.error(f"Step {step.index} failed: {e}", exc_info=True)
                span.record_exception(e)
                step.error = str(e)
                self._handle_failure(step, run, stream)
                return

            step.mark_completed(result)
            if step.output_var:
                run.variables[step.output_var] = result or ""
                stream.emit(VariableSetEvent(name=step.output_var, value=(result or "")[:VARIABLE_PREVIEW_LIMIT]))
            run.states[step.index] = StepState("completed", result, result)
            stream.emit(StepCompleteEvent(step_index=step.index, agent=agent.name))

    async def _pass_checkpoint(
        self, step: PlanStep, run: _DagRun, request: OrchestratorRequest, stream: EventStream
    ) -> bool:
        stream.emit(StepCheckpointEvent(step_index=step.index, description=step.description))
        timeout = self._config.get_int("ai.dag.checkpoint-timeout-sec", 600)
        try:
            outcome = await self._confirmations.wait_for_checkpoint(
                request.session_id, step.index, timeout, abandon=stream.cancellation
            )
        except Exception as e:
            logger.error(f"Checkpoint wait for step {step.index} failed: {e}", exc_info=True)
            step.mark_failed(f"Checkpoint wait failed: {e}")
            run.states[step.index] = StepState("failed")
            return False

        if outcome is ConfirmationOutcome.CONFIRMED:
            return True

        step.mark_skipped()
        run.states[step.index] = StepState("skipped")
        reason = {
            ConfirmationOutcome.REJECTED: "rejected",
            ConfirmationOutcome.ABANDONED: "abandoned",
        }.get(outcome, "timed out")
        stream.emit(ThinkingEvent(content=f"Checkpoint for step {step.index} {reason}; step skipped.", agent="system"))
        return False

    def _handle_failure(self, step: PlanStep, run: _DagRun, stream: EventStream) -> None:
        run.states[step.index] = StepState("failed")
        action, target_index = parse_failure_strategy(step.on_failure)

        target = None
        if action is FailureAction.GOTO:
            target = run.plan.step(target_index) if target_index is not None else None
            if target is None:
                logger.warning(f"Step {step.index}: goto target in '{step.on_failure}' does not exist")
            elif target is not step and target.status is StepStatus.RUNNING:
                logger.warning(f"Step {step.index}: goto target {target.index} is still running, not reset")
                target = None
            elif run.goto_resets[target.index] >= self._config.get_int("ai.dag.max-goto-resets", 3):
                logger.warning(f"Step {step.index}: goto budget for step {target.index} exhausted, aborting")
                action, target = FailureAction.ABORT, None

        if action is FailureAction.ABORT:
            step.mark_aborted()
        else:
            step.mark_failed()
            if target is not None:
                target.reset_for_goto()
                run.goto_resets[target.index] += 1
                run.states.pop(target.index, None)

        stream.emit(ThinkingEvent(content=f"Step {step.index} failed: {step.error}", agent="system"))


__all__ = ["CYCLE_ERROR", "DagExecutor"]
