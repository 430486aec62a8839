# SPDX-License-Identifier: Apache-2.0
"""Condition expressions gating DAG steps.

Grammar: clauses joined by ``&&``, each of the form
``step[<int>].<status|result|outputVar> <==|!=|contains> '<literal>'``.

Evaluation policy:
- blank expression -> True;
- a clause that does not parse -> True (logged), so a malformed planner
  condition never stalls a plan;
- a clause naming a step with no recorded state -> False.

`evaluate` is a pure function of its inputs and safe to call concurrently.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

_CLAUSE = re.compile(r"step\[(\d+)]\.(\w+)\s*(==|!=|contains)\s*'([^']*)'")
_AND = re.compile(r"\s*&&\s*")


@dataclass(frozen=True)
class StepState:
    """Read-only projection of a step as seen by conditions."""
    status: str
    result: Optional[str] = None
    output_var: Optional[str] = None

    def field(self, name: str) -> Optional[str]:
        if name == "status":
            return self.status
        if name == "result":
            return self.result
        if name == "outputVar":
            return self.output_var
        return None


def evaluate(expression: Optional[str], states: Mapping[int, StepState]) -> bool:
    if expression is None or not expression.strip():
        return True
    return all(_evaluate_clause(clause, states) for clause in _AND.split(expression.strip()))


def _evaluate_clause(clause: str, states: Mapping[int, StepState]) -> bool:
    match = _CLAUSE.fullmatch(clause.strip())
    if match is None:
        logger.warning(f"Unparseable condition clause, treating as true: {clause!r}")
        return True

    step_index = int(match.group(1))
    field_name, op, expected = match.group(2), match.group(3), match.group(4)

    state = states.get(step_index)
    if state is None:
        return False

    actual = state.field(field_name) or ""
    if op == "==":
        return actual == expected
    if op == "!=":
        return actual != expected
    return expected in actual


__all__ = ["StepState", "evaluate"]
