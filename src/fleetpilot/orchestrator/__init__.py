# SPDX-License-Identifier: Apache-2.0
"""Turn orchestration: the engine, plan executors and the sub-agent loop."""

from .dag_executor import DagExecutor
from .engine import APPROVAL_PATTERN, OrchestratorEngine
from .plan_executor import PlanExecutor, aggregate_results, group_steps
from .prompts import build_sub_agent_prompt
from .request import OrchestratorRequest
from .subagent import SubAgentExecutor, stream_model_turn

__all__ = [
    "APPROVAL_PATTERN",
    "DagExecutor",
    "OrchestratorEngine",
    "OrchestratorRequest",
    "PlanExecutor",
    "SubAgentExecutor",
    "aggregate_results",
    "build_sub_agent_prompt",
    "group_steps",
    "stream_model_turn",
]
