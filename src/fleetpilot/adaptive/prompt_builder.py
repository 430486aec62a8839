# SPDX-License-Identifier: Apache-2.0
"""Assembles the turn's system prompt: base + task section + memory + SOP.

Base and task sections can be replaced from configuration
(`ai.prompt.base`, `ai.prompt.task.<type>`); with `ai.adaptive.enabled`
off only the base prompt and retrieved context are used.
"""

from __future__ import annotations

from typing import Dict, Optional

from fleetpilot.config import AgenticConfigService

from .classifier import TaskType

OPS_ASSISTANT_PROMPT = (
    "You are an operations assistant for a fleet of managed Linux hosts. "
    "Use the available tools to inspect hosts, run scripts and report results. "
    "Prefer read-only inspection before making changes, state which hosts an "
    "action targets, and summarise outcomes precisely."
)

_TASK_SECTIONS: Dict[TaskType, str] = {
    TaskType.QUERY: (
        "## Query Mode\n"
        "You are helping the user retrieve system information.\n"
        "1. Use read-only tools to collect information\n"
        "2. Present results in a clear, structured format\n"
        "3. Do NOT execute any modification operations"
    ),
    TaskType.EXECUTE: (
        "## Execution Mode\n"
        "You are helping the user execute operations.\n"
        "1. Confirm the operation target and scope\n"
        "2. Assess operation risk level\n"
        "3. High-risk operations require user confirmation\n"
        "4. Verify results after execution"
    ),
    TaskType.TROUBLESHOOT: (
        "## Troubleshooting Mode\n"
        "You are helping the user diagnose issues.\n"
        "1. Gather symptoms: what fails, since when, impact scope\n"
        "2. Collect information: service status, logs, resources, network\n"
        "3. Form hypotheses and verify them one by one\n"
        "4. Find the root cause, not surface symptoms\n"
        "5. Provide clear fix steps and prevention measures\n"
        "Complete the diagnosis before proposing changes."
    ),
    TaskType.DEPLOY: (
        "## Deploy / Configuration Mode\n"
        "You are helping the user with deployment or configuration changes.\n"
        "1. Confirm a backup strategy before changes\n"
        "2. Verify target environment prerequisites\n"
        "3. Perform changes step by step\n"
        "4. Validate results after each step\n"
        "5. Keep a rollback path for every step"
    ),
    TaskType.MONITOR: (
        "## Monitoring & Analysis Mode\n"
        "You are helping the user analyze monitoring data.\n"
        "1. Collect relevant metric data\n"
        "2. Identify anomalous trends and threshold breaches\n"
        "3. Correlate metrics across dimensions\n"
        "4. Provide clear conclusions and recommendations"
    ),
}


class AdaptivePromptBuilder:
    def __init__(self, config: AgenticConfigService) -> None:
        self._config = config

    def build_prompt(
        self,
        task_type: TaskType,
        memory_context: Optional[str] = None,
        sop_suggestion: Optional[str] = None,
    ) -> str:
        parts = [self._config.get("ai.prompt.base", OPS_ASSISTANT_PROMPT) or OPS_ASSISTANT_PROMPT]

        if self._config.get_bool("ai.adaptive.enabled", True):
            section = self._config.get(f"ai.prompt.task.{task_type.value.lower()}", _TASK_SECTIONS.get(task_type))
            if section:
                parts.append(section)

        if memory_context:
            parts.append("## Relevant Historical Memory\n" + memory_context)
        if sop_suggestion:
            parts.append("## Recommended SOP\n" + sop_suggestion)
        return "\n\n".join(parts)


__all__ = ["AdaptivePromptBuilder", "OPS_ASSISTANT_PROMPT"]
