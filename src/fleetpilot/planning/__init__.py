# SPDX-License-Identifier: Apache-2.0
"""Execution plan model and condition evaluation."""

from .conditions import StepState, evaluate
from .plan import (
    DEFAULT_AGENT,
    ExecutionPlan,
    FailureAction,
    PlanStep,
    RiskLevel,
    StepStatus,
    build_summary,
    has_cycle,
    is_dag_plan,
    parse_failure_strategy,
    parse_plan_from_response,
    substitute_variables,
)

__all__ = [
    "DEFAULT_AGENT",
    "ExecutionPlan",
    "FailureAction",
    "PlanStep",
    "RiskLevel",
    "StepState",
    "StepStatus",
    "build_summary",
    "evaluate",
    "has_cycle",
    "is_dag_plan",
    "parse_failure_strategy",
    "parse_plan_from_response",
    "substitute_variables",
]
