# SPDX-License-Identifier: Apache-2.0
"""Unit tests for the execution plan model.

Scope:
- Plan parsing from planner output (defaults, null handling, loose field
  types, "no plan" cases).
- Step state machine and the two backward moves.
- DAG detection, cycle detection, summaries and variable substitution.
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from fleetpilot.exceptions import InvalidStepTransitionError
from fleetpilot.planning.plan import (
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


def fenced(payload: object) -> str:
    return "Here is the plan.\n```json\n" + json.dumps(payload) + "\n```\nThanks."


def plan_of(*steps: dict) -> ExecutionPlan:
    return ExecutionPlan.model_validate({"summary": "test", "steps": list(steps)})


# === parsing ===

def test_parse_applies_documented_defaults() -> None:
    plan = parse_plan_from_response(
        fenced(
            {
                "summary": "Restart nginx",
                "steps": [{"index": 1, "description": "restart", "agent": None, "checkpoint": None, "extra": 1}],
                "estimated_risk": "medium",
                "requires_confirmation": True,
            }
        )
    )
    assert plan is not None
    step = plan.steps[0]
    assert step.agent == "execute"
    assert step.on_failure == "abort"
    assert step.checkpoint is False
    assert step.status is StepStatus.PENDING
    assert plan.estimated_risk is RiskLevel.MEDIUM
    assert plan.requires_confirmation is True


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "no code block here",
        "```json\n{}\n```",
        "```json\n{not json}\n```",
        fenced({"summary": "nothing", "steps": []}),
        fenced({"summary": "bad", "steps": [{"description": "missing index"}]}),
    ],
)
def test_parse_returns_none_when_no_plan(text: str) -> None:
    assert parse_plan_from_response(text) is None


def test_parse_reads_first_block_and_snake_case_fields() -> None:
    text = fenced(
        {
            "summary": "s",
            "steps": [
                {"index": 1, "description": "a", "output_var": "out"},
                {"index": 2, "description": "b ${x}", "depends_on": [1], "input_vars": {"x": "${out}"},
                 "parallel_group": None, "on_failure": "goto:1", "timeout_sec": 30, "hosts": ["h1"]},
            ],
        }
    ) + "\n```json\n{\"summary\": \"second\"}\n```"
    plan = parse_plan_from_response(text)
    assert plan is not None and plan.summary == "s"
    second = plan.step(2)
    assert second.depends_on == [1]
    assert second.input_vars == {"x": "${out}"}
    assert second.timeout_sec == 30
    assert second.hosts == ["h1"]


def test_duplicate_step_indices_are_rejected() -> None:
    with pytest.raises(ValidationError):
        plan_of({"index": 1}, {"index": 1})


# === state machine ===

def test_forward_transitions() -> None:
    step = PlanStep(index=1)
    step.mark_running()
    step.mark_completed("ok")
    assert step.status is StepStatus.COMPLETED
    assert step.result == "ok"


def test_terminal_step_cannot_restart() -> None:
    step = PlanStep(index=1)
    step.mark_running()
    step.mark_completed("ok")
    with pytest.raises(InvalidStepTransitionError):
        step.mark_running()


def test_pending_step_cannot_complete_directly() -> None:
    with pytest.raises(InvalidStepTransitionError):
        PlanStep(index=3).mark_completed("x")


def test_retry_reset_only_from_failed() -> None:
    step = PlanStep(index=1)
    step.mark_running()
    step.mark_failed("boom")
    step.reset_for_retry()
    assert step.status is StepStatus.PENDING
    assert step.error is None

    step.mark_running()
    step.mark_completed("ok")
    with pytest.raises(InvalidStepTransitionError):
        step.reset_for_retry()


def test_goto_reset_reopens_any_settled_step() -> None:
    step = PlanStep(index=1)
    step.mark_running()
    step.mark_completed("old")
    step.reset_for_goto()
    assert step.status is StepStatus.PENDING
    assert step.result is None

    step.mark_running()
    with pytest.raises(InvalidStepTransitionError):
        step.reset_for_goto()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("skip", (FailureAction.SKIP, None)),
        ("goto:3", (FailureAction.GOTO, 3)),
        ("goto: 2", (FailureAction.GOTO, 2)),
        ("abort", (FailureAction.ABORT, None)),
        (None, (FailureAction.ABORT, None)),
        ("whatever", (FailureAction.ABORT, None)),
    ],
)
def test_parse_failure_strategy(raw, expected) -> None:
    assert parse_failure_strategy(raw) == expected


# === graph helpers ===

def test_is_dag_plan() -> None:
    assert not is_dag_plan(plan_of({"index": 1}, {"index": 2, "parallel_group": 1}))
    assert is_dag_plan(plan_of({"index": 1}, {"index": 2, "depends_on": [1]}))
    assert is_dag_plan(plan_of({"index": 1, "condition": "step[0].status == 'completed'"}))
    assert is_dag_plan(plan_of({"index": 1, "checkpoint": True}))


def test_has_cycle_detects_loops_and_is_stable() -> None:
    cyclic = plan_of({"index": 1, "depends_on": [3]}, {"index": 2, "depends_on": [1]}, {"index": 3, "depends_on": [2]})
    assert has_cycle(cyclic) is True
    assert has_cycle(cyclic) is True

    acyclic = plan_of({"index": 1}, {"index": 2, "depends_on": [1]}, {"index": 3, "depends_on": [1, 2]})
    assert has_cycle(acyclic) is False


def test_self_dependency_is_a_cycle_but_missing_step_is_not() -> None:
    assert has_cycle(plan_of({"index": 1, "depends_on": [1]})) is True
    assert has_cycle(plan_of({"index": 1, "depends_on": [42]})) is False


def test_build_summary_counts() -> None:
    plan = plan_of({"index": 1}, {"index": 2}, {"index": 3})
    plan.steps[0].mark_running()
    plan.steps[0].mark_completed("ok")
    plan.steps[1].mark_running()
    plan.steps[1].mark_failed("x")
    plan.steps[2].mark_skipped()
    assert build_summary(plan) == "1/3 steps completed, 1 failed, 1 skipped"


def test_substitute_variables() -> None:
    variables = {"disk": "92%", "host": "web-1"}
    assert substitute_variables("check ${host}", {}, variables) == "check web-1"
    assert substitute_variables("usage ${u}", {"u": "${disk}"}, variables) == "usage 92%"
    assert substitute_variables("usage ${u}", {"u": "${later}"}, variables) == "usage ${later}"
    assert substitute_variables("left ${unknown}", {}, variables) == "left ${unknown}"


def test_loosely_typed_step_fields_are_coerced() -> None:
    plan = parse_plan_from_response(
        fenced(
            {
                "summary": "s",
                "steps": [
                    {"index": 1, "description": "a", "input_vars": {"n": 5, "dry": True, "note": None}, "timeout_sec": 29.6},
                    {"index": 2, "description": "b", "timeout_sec": "45"},
                    {"index": 3, "description": "c", "timeout_sec": "soon"},
                ],
            }
        )
    )
    assert plan is not None
    assert plan.steps[0].input_vars == {"n": "5", "dry": "true", "note": ""}
    assert plan.steps[0].timeout_sec == 30
    assert plan.steps[1].timeout_sec == 45
    assert plan.steps[2].timeout_sec is None
