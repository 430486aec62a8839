# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/planning/plan.py

Project: fleetpilot

Description:
    Execution plan model parsed from planner output, plus the step status
    state machine enforced by every mutator.

Responsibilities
----------------
- Pydantic models for `ExecutionPlan` and `PlanStep` (snake_case JSON,
  unknown fields ignored, explicit nulls replaced by defaults).
- Step transitions: pending -> running -> {completed, failed, skipped, aborted};
  failed -> pending for a retry; any non-running status -> pending for a goto.
- Helpers shared by both executors: DAG detection, cycle detection,
  summaries, variable substitution and fenced-JSON plan extraction.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fleetpilot.exceptions import InvalidStepTransitionError

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "execute"

_PLAN_JSON_PATTERN = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)
_GOTO_PATTERN = re.compile(r"^goto:\s*(-?\d+)$")
_VAR_REFERENCE = re.compile(r"^\$\{(.+)\}$")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


_FORWARD: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset(
        {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.ABORTED}
    ),
}


class FailureAction(str, Enum):
    ABORT = "abort"
    SKIP = "skip"
    GOTO = "goto"


def parse_failure_strategy(raw: Optional[str]) -> tuple[FailureAction, Optional[int]]:
    """Parses `on_failure`: "skip", "goto:N" or anything else (abort)."""
    value = (raw or "").strip().lower()
    if value == FailureAction.SKIP.value:
        return FailureAction.SKIP, None
    match = _GOTO_PATTERN.match(value)
    if match:
        return FailureAction.GOTO, int(match.group(1))
    if value.startswith("goto:"):
        return FailureAction.GOTO, None
    return FailureAction.ABORT, None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class PlanStep(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int
    description: str = ""
    agent: str = DEFAULT_AGENT
    tools: List[str] = Field(default_factory=list)
    hosts: List[str] = Field(default_factory=list)
    depends_on: List[int] = Field(default_factory=list)
    condition: Optional[str] = None
    checkpoint: bool = False
    parallel_group: Optional[int] = None
    on_failure: str = "abort"
    timeout_sec: Optional[int] = None
    input_vars: Dict[str, str] = Field(default_factory=dict)
    output_var: Optional[str] = None

    status: StepStatus = StepStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None

    @field_validator("tools", "hosts", "depends_on", mode="before")
    @classmethod
    def _null_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("input_vars", mode="before")
    @classmethod
    def _stringify_inputs(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            return v
        return {str(k): _as_text(val) for k, val in v.items()}

    @field_validator("timeout_sec", mode="before")
    @classmethod
    def _whole_seconds(cls, v: Any) -> Any:
        if isinstance(v, bool) or v is None:
            return v
        if isinstance(v, str):
            try:
                v = float(v.strip())
            except ValueError:
                logger.debug(f"Ignoring non-numeric step timeout {v!r}")
                return None
        if isinstance(v, float):
            return int(round(v))
        return v

    @field_validator("agent", mode="before")
    @classmethod
    def _default_agent(cls, v: Any) -> Any:
        return DEFAULT_AGENT if v is None or (isinstance(v, str) and not v.strip()) else v

    @field_validator("on_failure", mode="before")
    @classmethod
    def _default_on_failure(cls, v: Any) -> Any:
        return "abort" if v is None or (isinstance(v, str) and not v.strip()) else v

    @field_validator("checkpoint", mode="before")
    @classmethod
    def _null_checkpoint(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v: Any) -> Any:
        return StepStatus.PENDING if v is None else v

    # --- state machine ----------------------------------------------------

    def _move(self, target: StepStatus) -> None:
        if target not in _FORWARD.get(self.status, frozenset()):
            raise InvalidStepTransitionError(self.index, self.status.value, target.value)
        self.status = target

    def mark_running(self) -> None:
        self._move(StepStatus.RUNNING)

    def mark_completed(self, result: Optional[str]) -> None:
        self._move(StepStatus.COMPLETED)
        self.result = result

    def mark_failed(self, error: Optional[str] = None) -> None:
        self._move(StepStatus.FAILED)
        if error is not None:
            self.error = error

    def mark_skipped(self) -> None:
        self._move(StepStatus.SKIPPED)

    def mark_aborted(self) -> None:
        self._move(StepStatus.ABORTED)

    def reset_for_retry(self) -> None:
        if self.status is not StepStatus.FAILED:
            raise InvalidStepTransitionError(self.index, self.status.value, StepStatus.PENDING.value)
        self.status = StepStatus.PENDING
        self.error = None

    def reset_for_goto(self) -> None:
        """Re-enables a step for a goto loop-back, whatever terminal state it reached."""
        if self.status is StepStatus.RUNNING:
            raise InvalidStepTransitionError(self.index, self.status.value, StepStatus.PENDING.value)
        self.status = StepStatus.PENDING
        self.result = None
        self.error = None


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str = ""
    steps: List[PlanStep] = Field(default_factory=list)
    requires_confirmation: bool = False
    estimated_risk: RiskLevel = RiskLevel.LOW
    rollback_hint: Optional[str] = None

    @field_validator("steps", mode="before")
    @classmethod
    def _null_steps(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("requires_confirmation", mode="before")
    @classmethod
    def _null_confirmation(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("estimated_risk", mode="before")
    @classmethod
    def _normalize_risk(cls, v: Any) -> Any:
        if v is None:
            return RiskLevel.LOW
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _unique_indices(self) -> "ExecutionPlan":
        seen = set()
        for s in self.steps:
            if s.index in seen:
                raise ValueError(f"duplicate step index {s.index}")
            seen.add(s.index)
        return self

    def step(self, index: int) -> Optional[PlanStep]:
        for s in self.steps:
            if s.index == index:
                return s
        return None

    def count(self, status: StepStatus) -> int:
        return sum(1 for s in self.steps if s.status is status)


def is_dag_plan(plan: ExecutionPlan) -> bool:
    """A plan needs the DAG executor if any step declares dependencies, a condition or a checkpoint."""
    return any(s.depends_on or s.condition is not None or s.checkpoint for s in plan.steps)


def dependency_graph(plan: ExecutionPlan) -> nx.DiGraph:
    """Edges run from a dependency to its dependent; references to absent steps are not edges."""
    graph = nx.DiGraph()
    indices = {s.index for s in plan.steps}
    graph.add_nodes_from(indices)
    for s in plan.steps:
        for dep in s.depends_on:
            if dep in indices:
                graph.add_edge(dep, s.index)
    return graph


def has_cycle(plan: ExecutionPlan) -> bool:
    """True when no topological order covers every step (a self-dependency counts)."""
    return not nx.is_directed_acyclic_graph(dependency_graph(plan))


def build_summary(plan: ExecutionPlan) -> str:
    return (
        f"{plan.count(StepStatus.COMPLETED)}/{len(plan.steps)} steps completed, "
        f"{plan.count(StepStatus.FAILED)} failed, {plan.count(StepStatus.SKIPPED)} skipped"
    )


def substitute_variables(
    description: str, input_vars: Mapping[str, str], variables: Mapping[str, str]
) -> str:
    """Resolves `${name}` references from explicit input bindings, then from the variable store.

    An input binding `{"host": "${target}"}` replaces `${host}` with the value
    stored under `target`; a binding to a variable that does not exist yet
    leaves the raw reference in place.
    """
    text = description or ""
    for key, ref in input_vars.items():
        match = _VAR_REFERENCE.match(ref or "")
        if not match:
            continue
        source = match.group(1)
        value = variables.get(source, ref)
        text = text.replace("${" + key + "}", value)
    for key, value in variables.items():
        text = text.replace("${" + key + "}", value)
    return text


def parse_plan_from_response(response: Optional[str]) -> Optional[ExecutionPlan]:
    """Extracts the first fenced ```json block from planner output.

    Returns None ("no plan needed") for blank text, a missing block, `{}`,
    invalid JSON, a schema mismatch, or a plan without steps.
    """
    if not response or not response.strip():
        return None
    match = _PLAN_JSON_PATTERN.search(response)
    if not match:
        logger.debug("No JSON code block found in planner response")
        return None
    body = match.group(1).strip()
    if not body or body == "{}":
        logger.debug("Planner returned an empty plan; request needs no planning")
        return None
    try:
        plan = ExecutionPlan.model_validate(json.loads(body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Failed to parse execution plan JSON: {e}")
        return None
    if not plan.steps:
        return None
    return plan


__all__ = [
    "DEFAULT_AGENT",
    "ExecutionPlan",
    "FailureAction",
    "PlanStep",
    "RiskLevel",
    "StepStatus",
    "build_summary",
    "dependency_graph",
    "has_cycle",
    "is_dag_plan",
    "parse_failure_strategy",
    "parse_plan_from_response",
    "substitute_variables",
]
