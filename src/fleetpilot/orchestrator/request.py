# SPDX-License-Identifier: Apache-2.0
"""Per-turn request handed to the orchestrator.

The request doubles as the turn's mutable scratchpad: the plan produced (or
confirmed) during the turn, the aggregated step results and, at the very end,
the response text are recorded on it.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from fleetpilot.exceptions import InvalidStateError
from fleetpilot.model_gateway.base import LLMMessage
from fleetpilot.planning.plan import ExecutionPlan


class OrchestratorRequest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=False)

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[str] = None
    message: str
    history: List[LLMMessage] = Field(default_factory=list)
    target_hosts: List[str] = Field(default_factory=list)

    provider: Optional[str] = None
    model: Optional[str] = None
    enable_tools: bool = True

    # Zero or less means "use the configured default".
    max_iterations: int = 0
    max_consecutive_errors: int = 0
    max_tool_calls: int = 0

    execution_plan: Optional[ExecutionPlan] = None
    skip_planning: bool = False
    plan_confirmed: bool = False
    step_results: str = ""

    _response: Optional[str] = PrivateAttr(default=None)

    @field_validator("target_hosts", mode="before")
    @classmethod
    def _clean_hosts(cls, v):
        if v is None:
            return []
        return [h.strip() for h in v if isinstance(h, str) and h.strip()]

    @property
    def response_content(self) -> Optional[str]:
        return self._response

    def set_response(self, text: str) -> None:
        """Records the turn's final answer; a turn has exactly one."""
        if self._response is not None:
            raise InvalidStateError(f"Response for session '{self.session_id}' is already set.")
        self._response = text


__all__ = ["OrchestratorRequest"]
