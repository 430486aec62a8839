# SPDX-License-Identifier: Apache-2.0
"""Rule-based task classification for adaptive prompts and tool selection."""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional, Pattern, Tuple


class TaskType(str, Enum):
    QUERY = "QUERY"
    EXECUTE = "EXECUTE"
    TROUBLESHOOT = "TROUBLESHOOT"
    DEPLOY = "DEPLOY"
    MONITOR = "MONITOR"
    GENERAL = "GENERAL"


def _words(*words: str) -> Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)


# checked in order; the first match wins
_RULES: List[Tuple[TaskType, Pattern[str]]] = [
    (TaskType.EXECUTE, _words(
        "execute", "run", "start", "stop", "restart", "install", "remove",
        "create", "delete", "clean", "script", "kill",
    )),
    (TaskType.DEPLOY, _words(
        "deploy", "configure", "migrate", "upgrade", "release", "rollback", "publish",
    )),
    (TaskType.TROUBLESHOOT, _words(
        "troubleshoot", "diagnose", "why", "error", "fail", "failed", "failing", "down",
        "timeout", "slow", "crash", "cannot", "unable",
    )),
    (TaskType.MONITOR, _words(
        "monitor", "alert", "cpu", "memory", "disk", "load", "metrics", "threshold", "traffic",
    )),
    (TaskType.QUERY, _words(
        "show", "list", "get", "status", "how many", "which", "check", "look",
    )),
]


class TaskClassifier:
    def classify(self, message: Optional[str]) -> TaskType:
        if not message or not message.strip():
            return TaskType.GENERAL
        for task_type, pattern in _RULES:
            if pattern.search(message):
                return task_type
        return TaskType.GENERAL


__all__ = ["TaskClassifier", "TaskType"]
