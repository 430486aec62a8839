# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/exceptions.py

Project: fleetpilot

Description:
    Exception taxonomy for the orchestration core. Errors that can reach an
    HTTP caller carry a status code and render as RFC 7807 Problem Details.

Notes:
    Recoverable conditions inside a turn (tool failures, step failures,
    confirmation timeouts) are reported as events and never raised here.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base exception for all application-specific errors."""

    def __init__(
        self, message: str, status_code: int = 500, error_code: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.error_id = f"err_{secrets.token_hex(8)}"
        self.timestamp = time.time()

    def to_problem_detail(self) -> Dict[str, Any]:
        """Generates an RFC 7807-compliant Problem Details dictionary."""
        return {
            "type": f"urn:fleetpilot:error:{self.error_code}",
            "title": self.error_code,
            "status": self.status_code,
            "detail": self.message,
            "instance": self.error_id,
        }

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message} (ID: {self.error_id})"


class ConfigurationError(CoreError):
    """Raised when a required configuration is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=500, error_code="ConfigurationError")


class InvalidStateError(CoreError):
    """Raised when an operation is attempted in an invalid state."""

    def __init__(self, message: str, error_code: str = "InvalidStateError") -> None:
        super().__init__(message, status_code=409, error_code=error_code)


class InvalidStepTransitionError(InvalidStateError):
    """Raised when a plan step is moved to a status its current status cannot reach."""

    def __init__(self, step_index: int, current: str, target: str) -> None:
        super().__init__(
            f"Step {step_index} cannot move from '{current}' to '{target}'.",
            error_code="InvalidStepTransition",
        )
        self.step_index = step_index
        self.current = current
        self.target = target


class ToolNotFoundError(KeyError, CoreError):
    """Raised when a tool is not found in the registry."""

    def __init__(self, tool_name: str) -> None:
        message = f"Tool '{tool_name}' not found in registry."
        CoreError.__init__(self, message, status_code=404, error_code="ToolNotFound")
        self.tool_name = tool_name

    def __str__(self) -> str:
        return CoreError.__str__(self)


class ToolRegistrationError(CoreError):
    """Raised when a tool cannot be added to the registry."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400, error_code="ToolRegistrationError")


class ProviderNotFoundError(CoreError):
    """Raised when a requested LLM provider is not registered."""

    def __init__(self, provider_name: str) -> None:
        super().__init__(
            f"LLM provider '{provider_name}' is not registered. Check MODEL_PROVIDER.",
            status_code=404,
            error_code="ProviderNotFound",
        )
        self.provider_name = provider_name


class SubAgentError(CoreError):
    """Raised when a sub-agent run cannot produce an answer because its model call failed."""

    def __init__(self, agent_name: str, message: str) -> None:
        super().__init__(
            f"Sub-agent '{agent_name}' model call failed: {message}",
            status_code=502,
            error_code="SubAgentError",
        )
        self.agent_name = agent_name


__all__ = [
    "CoreError",
    "ConfigurationError",
    "InvalidStateError",
    "InvalidStepTransitionError",
    "ToolNotFoundError",
    "ToolRegistrationError",
    "ProviderNotFoundError",
    "SubAgentError",
]
