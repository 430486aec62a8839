# SPDX-License-Identifier: Apache-2.0
"""Retrieval collaborators consulted at the start of a turn.

Memory and SOP retrieval are backed by external stores (vector search over
session summaries and learned SOP templates); the orchestrator only sees the
protocols below. `PatternSopLibrary` is a small in-process implementation
that matches SOP trigger patterns with regular expressions.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, ValidationError

from fleetpilot.planning.plan import DEFAULT_AGENT, ExecutionPlan, PlanStep, RiskLevel

logger = logging.getLogger(__name__)


class SopTemplate(BaseModel):
    id: str
    title: str
    description: str = ""
    steps_json: str
    trigger_pattern: Optional[str] = None
    category: Optional[str] = None
    success_count: int = 0
    total_count: int = 0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_count if self.total_count else 0.0


class MemoryRetriever(Protocol):
    async def retrieve_relevant_memory(self, user_id: Optional[str], message: str) -> Optional[str]:
        ...


class SopRetriever(Protocol):
    async def find_matching_sop(self, message: str, user_id: Optional[str] = None) -> Optional[SopTemplate]:
        ...


def sop_to_plan(sop: SopTemplate) -> Optional[ExecutionPlan]:
    """Turns a stored SOP into a confirmation-gated plan; None if its steps are unusable."""
    try:
        root: Dict[str, Any] = json.loads(sop.steps_json)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to convert SOP '{sop.title}' to plan: {e}")
        return None

    raw_steps = root.get("steps") if isinstance(root, dict) else None
    if not isinstance(raw_steps, list) or not raw_steps:
        return None

    steps: List[PlanStep] = []
    try:
        for position, raw in enumerate(raw_steps):
            data = dict(raw)
            data.setdefault("index", position)
            data.setdefault("agent", DEFAULT_AGENT)
            data.pop("status", None)
            steps.append(PlanStep.model_validate(data))
    except (TypeError, ValueError, ValidationError) as e:
        logger.error(f"Failed to convert SOP '{sop.title}' to plan: {e}")
        return None

    risk_raw = str(root.get("estimated_risk") or "LOW").upper()
    try:
        risk = RiskLevel(risk_raw)
    except ValueError:
        risk = RiskLevel.LOW

    try:
        return ExecutionPlan(
            summary=f"[SOP] {sop.title}",
            steps=steps,
            requires_confirmation=True,
            estimated_risk=risk,
        )
    except ValidationError as e:
        logger.error(f"Failed to convert SOP '{sop.title}' to plan: {e}")
        return None


class PatternSopLibrary:
    """SOP retriever over an in-memory list, matching `trigger_pattern` regexes."""

    def __init__(self, templates: Iterable[SopTemplate] = (), *, min_success_rate: float = 0.0) -> None:
        self._templates: List[SopTemplate] = list(templates)
        self._min_success_rate = min_success_rate

    def add(self, template: SopTemplate) -> None:
        self._templates.append(template)

    async def find_matching_sop(self, message: str, user_id: Optional[str] = None) -> Optional[SopTemplate]:
        for template in self._templates:
            if not template.trigger_pattern:
                continue
            if template.total_count and template.success_rate < self._min_success_rate:
                continue
            try:
                if re.search(template.trigger_pattern, message, re.IGNORECASE):
                    return template
            except re.error as e:
                logger.warning(f"Invalid trigger pattern on SOP '{template.title}': {e}")
        return None


__all__ = [
    "MemoryRetriever",
    "PatternSopLibrary",
    "SopRetriever",
    "SopTemplate",
    "sop_to_plan",
]
