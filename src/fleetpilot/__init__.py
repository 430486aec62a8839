# SPDX-License-Identifier: Apache-2.0
"""fleetpilot: agentic orchestration core for fleet operations.

Package layout
--------------
fleetpilot/
  config.py         - string-keyed runtime configuration
  exceptions.py     - error taxonomy (Problem Details)
  model_gateway/    - message types, provider protocol, OpenAI provider, router
  runtime/          - tool registry, event stream, confirmations, tool-call accumulator
  planning/         - execution plan model, condition evaluator
  agents/           - sub-agent definitions and the reviewer
  adaptive/         - task classification, adaptive prompts, tool selection
  orchestrator/     - sub-agent loop, plan executors, turn driver
  tools/            - built-in tools
  gateway/          - FastAPI surface (event stream, confirmation control)
"""

from __future__ import annotations

import importlib.metadata as _metadata

try:
    __version__ = _metadata.version("fleetpilot")
except _metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
