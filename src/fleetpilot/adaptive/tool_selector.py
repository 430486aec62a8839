# SPDX-License-Identifier: Apache-2.0
"""Narrows the tool set offered to the model according to the task type."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List

from fleetpilot.config import AgenticConfigService

from .classifier import TaskType

logger = logging.getLogger(__name__)

UNIVERSAL_TOOLS: FrozenSet[str] = frozenset({"get_current_time"})

# EXECUTE, TROUBLESHOOT and DEPLOY are absent: they get every tool.
TOOL_WHITELIST: Dict[TaskType, FrozenSet[str]] = {
    TaskType.QUERY: frozenset({"list_hosts", "get_host_metrics"}),
    TaskType.MONITOR: frozenset({"list_hosts", "get_host_metrics"}),
    TaskType.GENERAL: frozenset({"list_hosts"}),
}


class ToolSetSelector:
    def __init__(self, config: AgenticConfigService) -> None:
        self._config = config

    def select(self, task_type: TaskType, names: Iterable[str]) -> List[str]:
        names = list(names)
        if not self._config.get_bool("ai.adaptive.enabled", True):
            return names

        whitelist = TOOL_WHITELIST.get(task_type)
        if whitelist is None:
            return names

        selected = [n for n in names if n in whitelist or n in UNIVERSAL_TOOLS]
        if not selected and names:
            logger.warning(
                f"Task type {task_type.value}: whitelist removed all {len(names)} tools, using the full set"
            )
            return names
        logger.debug(f"Task type {task_type.value}: filtered {len(names)} -> {len(selected)} tools")
        return selected


__all__ = ["TOOL_WHITELIST", "ToolSetSelector", "UNIVERSAL_TOOLS"]
