# SPDX-License-Identifier: Apache-2.0
"""Prompt fragments the orchestrator injects into conversations."""

from __future__ import annotations

from typing import Sequence

from fleetpilot.planning.plan import PlanStep

SYNTHESIS_INSTRUCTION = (
    "All plan steps have finished. Using the step results above, write the final answer "
    "for the user: summarise what was done on which hosts, call out any step that failed "
    "or was skipped and why, and recommend follow-up actions where needed."
)

REFLECTION_PROMPT = (
    "{errors} tool call(s) failed in the last iteration. Before calling more tools, "
    "review the error messages, check the tool names and arguments you used, and "
    "change your approach instead of repeating the same call."
)

TOOL_BUDGET_NOTICE = "Tool call limit reached ({limit})."
TOOL_BUDGET_INSTRUCTION = " Please respond to the user directly based on available information."

TOOL_RESULT_DISPLAY_LIMIT = 2000


def target_hosts_context(hosts: Sequence[str]) -> str:
    lines = "\n".join(f"- {h}" for h in hosts)
    return (
        "The user selected the following target hosts for this conversation:\n"
        f"{lines}\n"
        "Operate on these hosts unless the user explicitly names others."
    )


def build_sub_agent_prompt(step: PlanStep, target_hosts: Sequence[str] = ()) -> str:
    """Task prompt for a step's sub-agent: description, host list, tool hints.

    Hosts selected on the request take priority over the hosts the planner
    wrote into the step.
    """
    parts = [step.description]

    hosts = list(target_hosts) or list(step.hosts)
    if hosts:
        listing = "\n".join(f"- host: {h}" for h in hosts)
        parts.append(
            "[Target hosts] Run this task on the following hosts:\n"
            f"{listing}\n"
            "Use these host ids directly as tool arguments; do not list hosts again."
        )

    if step.tools:
        hints = "\n".join(f"- {t}" for t in step.tools)
        parts.append(f"[Suggested tools] This task is expected to use:\n{hints}")

    return "\n\n".join(parts)


def truncate_for_display(text: str, limit: int = TOOL_RESULT_DISPLAY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text)} chars total)"


__all__ = [
    "REFLECTION_PROMPT",
    "SYNTHESIS_INSTRUCTION",
    "TOOL_BUDGET_INSTRUCTION",
    "TOOL_BUDGET_NOTICE",
    "build_sub_agent_prompt",
    "target_hosts_context",
    "truncate_for_display",
]
