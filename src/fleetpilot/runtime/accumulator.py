# SPDX-License-Identifier: Apache-2.0
"""Merges streamed tool-call fragments into complete tool calls.

One accumulator per model-response turn. Fragments are correlated by id only;
a fragment without an id has nothing to attach to and is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from fleetpilot.model_gateway.base import ToolCall, ToolCallDelta


@dataclass
class _Partial:
    id: str
    type: Optional[str]
    name: str
    arguments: List[str]


class ToolCallAccumulator:
    __slots__ = ("_calls",)

    def __init__(self) -> None:
        # dicts keep insertion order, which is the order the model announced the calls
        self._calls: Dict[str, _Partial] = {}

    def accumulate(self, fragments: Iterable[ToolCallDelta]) -> None:
        for fragment in fragments:
            if not fragment.id:
                continue
            partial = self._calls.get(fragment.id)
            if partial is None:
                self._calls[fragment.id] = _Partial(
                    id=fragment.id,
                    type=fragment.type,
                    name=fragment.name or "",
                    arguments=[fragment.arguments or ""],
                )
                continue
            if fragment.type and not partial.type:
                partial.type = fragment.type
            if fragment.name:
                partial.name = fragment.name
            if fragment.arguments:
                partial.arguments.append(fragment.arguments)

    def get_completed(self) -> List[ToolCall]:
        return [
            ToolCall(id=p.id, name=p.name, arguments="".join(p.arguments), type=p.type or "function")
            for p in self._calls.values()
            if p.name
        ]

    def reset(self) -> None:
        self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)


__all__ = ["ToolCallAccumulator"]
