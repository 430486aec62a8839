# SPDX-License-Identifier: Apache-2.0
"""Per-turn context adaptation: classification, prompts, tool sets, retrieval."""

from .classifier import TaskClassifier, TaskType
from .prompt_builder import AdaptivePromptBuilder
from .retrieval import MemoryRetriever, PatternSopLibrary, SopRetriever, SopTemplate, sop_to_plan
from .tool_selector import ToolSetSelector

__all__ = [
    "AdaptivePromptBuilder",
    "MemoryRetriever",
    "PatternSopLibrary",
    "SopRetriever",
    "SopTemplate",
    "TaskClassifier",
    "TaskType",
    "ToolSetSelector",
    "sop_to_plan",
]
