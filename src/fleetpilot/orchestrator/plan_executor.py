# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/orchestrator/plan_executor.py

Project: fleetpilot

Description:
    Runs an execution plan: dispatches DAG plans to `DagExecutor`, runs flat
    plans group by group, then publishes the summary and the optional review.

Responsibilities
----------------
- Flat plans: each ungrouped step is its own unit; steps sharing a
  `parallel_group` form one unit that runs concurrently and is awaited as a
  barrier. Units keep declaration order; grouped units are ordered among
  themselves by ascending group key.
- Every step runs with retries (`ai.plan.max-step-retries`), each attempt
  under a timeout (`timeout_sec` or `ai.plan.step-timeout-sec`).
- A step that exhausts its retries halts the plan when the failure strategy
  is ``abort`` or ``ask_user``. ``skip``/``goto`` routing exists only in the
  DAG executor.
- Aggregates step outcomes into ``Step N (description): result`` lines for
  the synthesis pass.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from opentelemetry import trace

from fleetpilot.agents.definitions import EXECUTE_AGENT, AgentDefinitionRegistry
from fleetpilot.agents.reviewer import ReviewerAgent
from fleetpilot.config import AgenticConfigService
from fleetpilot.planning.plan import ExecutionPlan, PlanStep, StepStatus, build_summary, is_dag_plan
from fleetpilot.runtime.events import (
    EventStream,
    ParallelCompleteEvent,
    ParallelProgressEvent,
    ParallelStartEvent,
    PlanSummaryEvent,
    ReviewCompleteEvent,
    ReviewStartEvent,
    StepCompleteEvent,
    StepRetryEvent,
    StepStartEvent,
    ThinkingEvent,
)

from .dag_executor import DagExecutor
from .prompts import build_sub_agent_prompt
from .request import OrchestratorRequest
from .subagent import SubAgentExecutor

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

HALTING_STRATEGIES = frozenset({"abort", "ask_user"})

ExecutionUnit = Tuple[Optional[int], List[PlanStep]]


def group_steps(steps: List[PlanStep]) -> List[ExecutionUnit]:
    """Splits steps into execution units (see module notes for ordering)."""
    units: List[ExecutionUnit] = []
    groups: Dict[int, List[PlanStep]] = {}
    for step in steps:
        if step.parallel_group is None:
            units.append((None, [step]))
        elif step.parallel_group in groups:
            groups[step.parallel_group].append(step)
        else:
            groups[step.parallel_group] = [step]
            units.append((step.parallel_group, groups[step.parallel_group]))

    slots = [i for i, (key, _) in enumerate(units) if key is not None]
    ordered = sorted((u for u in units if u[0] is not None), key=lambda u: u[0])
    for slot, unit in zip(slots, ordered):
        units[slot] = unit
    return units


def aggregate_results(plan: ExecutionPlan) -> str:
    lines = []
    for step in plan.steps:
        if step.status is StepStatus.COMPLETED and step.result:
            lines.append(f"Step {step.index} ({step.description}): {step.result}")
        elif step.status in (StepStatus.FAILED, StepStatus.ABORTED):
            lines.append(f"Step {step.index} ({step.description}) failed: {step.error or 'unknown error'}")
        elif step.status is StepStatus.SKIPPED:
            lines.append(f"Step {step.index} ({step.description}): skipped")
    return "\n\n".join(lines)


class PlanExecutor:
    __slots__ = ("_config", "_agents", "_subagents", "_reviewer", "_dag", "_parallel")

    def __init__(
        self,
        config: AgenticConfigService,
        agents: AgentDefinitionRegistry,
        subagents: SubAgentExecutor,
        reviewer: ReviewerAgent,
        dag: DagExecutor,
    ) -> None:
        self._config = config
        self._agents = agents
        self._subagents = subagents
        self._reviewer = reviewer
        self._dag = dag
        self._parallel = asyncio.Semaphore(max(1, config.get_int("ai.plan.max-parallel-tasks", 5)))

    async def execute_plan(self, plan: ExecutionPlan, request: OrchestratorRequest, stream: EventStream) -> str:
        """Runs `plan` to completion and returns the aggregated step results."""
        with tracer.start_as_current_span("plan.execute") as span:
            span.set_attribute("fleetpilot.session_id", request.session_id)
            span.set_attribute("fleetpilot.steps", len(plan.steps))

            if is_dag_plan(plan):
                span.set_attribute("fleetpilot.plan_kind", "dag")
                await self._dag.execute(plan, request, stream)
            else:
                span.set_attribute("fleetpilot.plan_kind", "simple")
                await self._execute_simple(plan, request, stream)

            summary = build_summary(plan)
            logger.info(f"Plan finished for session {request.session_id}: {summary}")
            if self._config.get_bool("ai.plan.summary-enabled", True):
                stream.emit(PlanSummaryEvent(plan=plan, content=summary))

            if not stream.cancelled and self._needs_review(plan):
                stream.emit(ReviewStartEvent())
                verdict = await self._reviewer.review(plan, request.message, stream)
                stream.emit(ReviewCompleteEvent(content=verdict or "Review complete"))

            request.step_results = aggregate_results(plan)
            return request.step_results

    def _needs_review(self, plan: ExecutionPlan) -> bool:
        if not self._config.get_bool("ai.review.enabled", True):
            return False
        return self._config.get_bool("ai.review.always", False) or any(
            s.agent == EXECUTE_AGENT for s in plan.steps
        )

    # --- flat plans ----------------------------------------------------------

    async def _execute_simple(self, plan: ExecutionPlan, request: OrchestratorRequest, stream: EventStream) -> None:
        strategy = (self._config.get("ai.plan.failure-strategy", "ask_user") or "ask_user").strip().lower()
        halt_on_failure = strategy in HALTING_STRATEGIES

        for group, steps in group_steps(plan.steps):
            if stream.cancelled:
                break
            if len(steps) == 1:
                ok = await self._execute_step_with_retry(steps[0], request, stream)
            else:
                ok = await self._execute_parallel_group(group, steps, request, stream)

            if not ok and halt_on_failure:
                stream.emit(ThinkingEvent(content="Plan aborted: a step failed after all retries.", agent="system"))
                break

    async def _execute_parallel_group(
        self, group: int, steps: List[PlanStep], request: OrchestratorRequest, stream: EventStream
    ) -> bool:
        total = len(steps)
        stream.emit(ParallelStartEvent(group=group, total=total))
        completed = 0

        async def run_one(step: PlanStep) -> bool:
            nonlocal completed
            async with self._parallel:
                ok = await self._execute_step_with_retry(step, request, stream)
            completed += 1
            stream.emit(ParallelProgressEvent(group=group, completed=completed, total=total))
            return ok

        outcomes = await asyncio.gather(*(run_one(s) for s in steps), return_exceptions=True)
        stream.emit(ParallelCompleteEvent(group=group))

        all_ok = True
        for step, outcome in zip(steps, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Parallel step {step.index} crashed: {outcome}", exc_info=outcome)
                all_ok = False
            elif not outcome:
                all_ok = False
        return all_ok

    async def _execute_step_with_retry(
        self, step: PlanStep, request: OrchestratorRequest, stream: EventStream
    ) -> bool:
        if step.status.is_terminal:
            # Already settled in an earlier turn (plan resubmitted after confirmation).
            return step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

        max_retries = max(0, self._config.get_int("ai.plan.max-step-retries", 2))
        attempt = 0
        while True:
            if stream.cancelled:
                return False
            if attempt > 0:
                stream.emit(
                    StepRetryEvent(
                        step_index=step.index,
                        attempt=attempt,
                        max_retries=max_retries,
                        content=f"Retrying step {step.index} (attempt {attempt}/{max_retries})",
                    )
                )
            if await self._execute_single_step(step, request, stream):
                return True
            attempt += 1
            if attempt > max_retries:
                return False
            step.reset_for_retry()

    async def _execute_single_step(
        self, step: PlanStep, request: OrchestratorRequest, stream: EventStream
    ) -> bool:
        step.mark_running()
        stream.emit(StepStartEvent(step_index=step.index, description=step.description, agent=step.agent))

        agent = self._agents.find_enabled(step.agent) or self._agents.find_enabled(EXECUTE_AGENT)
        if agent is None:
            step.mark_skipped()
            stream.emit(ThinkingEvent(content=f"Step {step.index} skipped: no agent available", agent="system"))
            return True

        timeout = step.timeout_sec or self._config.get_int("ai.plan.step-timeout-sec", 300)
        prompt = build_sub_agent_prompt(step, request.target_hosts)
        try:
            result = await asyncio.wait_for(self._subagents.run(agent, prompt, stream=stream), timeout)
        except asyncio.TimeoutError:
            error = f"Step {step.index} timed out after {timeout}s"
        except Exception as e:
            logger.error(f"Step {step.index} failed: {e}", exc_info=True)
            error = str(e)
        else:
            step.mark_completed(result)
            stream.emit(StepCompleteEvent(step_index=step.index, agent=agent.name))
            return True

        step.mark_failed(error)
        stream.emit(ThinkingEvent(content=f"Step {step.index} failed: {error}", agent="system"))
        return False


__all__ = ["PlanExecutor", "aggregate_results", "group_steps"]
