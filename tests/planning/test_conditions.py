# SPDX-License-Identifier: Apache-2.0
"""Unit tests for the step condition evaluator."""

from __future__ import annotations

import pytest

from fleetpilot.planning.conditions import StepState, evaluate

STATES = {
    1: StepState("completed", "disk usage ok", "disk usage ok"),
    2: StepState("failed"),
    3: StepState("skipped"),
}


@pytest.mark.parametrize("expression", [None, "", "   "])
def test_blank_expression_is_true(expression) -> None:
    assert evaluate(expression, STATES) is True
    assert evaluate(expression, {}) is True


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("step[1].status == 'completed'", True),
        ("step[1].status != 'completed'", False),
        ("step[2].status == 'failed'", True),
        ("step[1].result contains 'ok'", True),
        ("step[1].result contains 'error'", False),
        ("step[1].outputVar contains 'disk'", True),
        ("step[3].result == ''", True),
    ],
)
def test_single_clause(expression: str, expected: bool) -> None:
    assert evaluate(expression, STATES) is expected


def test_conjunction_of_clauses() -> None:
    assert evaluate("step[1].status == 'completed' && step[1].result contains 'ok'", STATES) is True
    assert evaluate("step[1].status == 'completed' && step[2].status == 'completed'", STATES) is False
    assert evaluate("step[1].status == 'completed'&&step[3].status == 'skipped'", STATES) is True


@pytest.mark.parametrize(
    "expression",
    ["hosts are healthy", "step[1].status === 'completed'", "step[x].status == 'completed'", "step[1].status == completed"],
)
def test_unparseable_clause_is_fail_open(expression: str) -> None:
    assert evaluate(expression, {}) is True


def test_missing_step_is_fail_closed() -> None:
    assert evaluate("step[9].status != 'completed'", STATES) is False
    assert evaluate("step[1].status == 'completed' && step[9].status == 'completed'", STATES) is False


def test_unknown_field_compares_as_empty() -> None:
    assert evaluate("step[1].color == ''", STATES) is True
