# SPDX-License-Identifier: Apache-2.0
# src/fleetpilot/model_gateway/base.py
#
# Module purpose
# --------------
# Core types and contracts of the model gateway layer:
#  - unified message model (LLMMessage) including assistant tool calls and
#    aggregated tool responses,
#  - streaming chunk model carrying text deltas and tool-call fragments,
#  - the LLM provider protocol (streaming only; the orchestrator never needs
#    a blocking completion),
#  - domain exceptions (timeout, throttling, server errors),
#  - adapters to the OpenAI Chat Completions wire format.
#
# Concrete providers implement the same signature, so the orchestration core
# stays independent of any vendor SDK.

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx


# ---------------------------------------------------------------------------
# Model gateway exceptions
# ---------------------------------------------------------------------------

# ===========================
# ModelGatewayError
# ===========================
@dataclass
class ModelGatewayError(RuntimeError):
    """
    Generic model gateway error carrying diagnostic context.

    Fields (all optional except 'message'):
        message      : short description ("Rate limited / overloaded"),
        provider     : provider identifier ("openai", "vllm", ...),
        status_code  : HTTP status (429/500/...),
        request_id   : provider request id (x-request-id),
        retry_after  : suggested wait in seconds,
        details      : decoded error body (dict/str).
    """
    message: str
    provider: Optional[str] = None
    status_code: Optional[int] = None
    request_id: Optional[str] = None
    retry_after: Optional[float] = None
    details: Any = None

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.provider:
            parts.append(f"[provider={self.provider}]")
        if self.status_code is not None:
            parts.append(f"[status={self.status_code}]")
        if self.request_id:
            parts.append(f"[request_id={self.request_id}]")
        if self.retry_after is not None:
            parts.append(f"[retry_after={self.retry_after}s]")
        return " ".join(parts)

    @classmethod
    def from_httpx(
        cls,
        exc: httpx.HTTPStatusError,
        *,
        provider: str,
        message: str = "Provider HTTP error",
    ) -> "ModelGatewayError":
        """Maps an httpx status error to a gateway error with response context."""
        response = exc.response
        retry_after: Optional[float] = None
        header = response.headers.get("retry-after")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        try:
            details: Any = response.json()
        except (ValueError, httpx.ResponseNotRead):
            details = None
        return cls(
            message=message,
            provider=provider,
            status_code=response.status_code,
            request_id=response.headers.get("x-request-id"),
            retry_after=retry_after,
            details=details,
        )


# ===========================
# ProviderTimeout
# ===========================
@dataclass
class ProviderTimeout(ModelGatewayError):
    """The provider did not answer within the configured timeout."""
    timeout: Optional[float] = None
    endpoint: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.message or "Provider request timed out"]
        if self.provider:
            parts.append(f"[provider={self.provider}]")
        if self.endpoint:
            parts.append(f"[endpoint={self.endpoint}]")
        if self.timeout is not None:
            parts.append(f"[timeout={self.timeout}s]")
        return " ".join(parts)


# ===========================
# ProviderOverloaded
# ===========================
@dataclass
class ProviderOverloaded(ModelGatewayError):
    """Provider throttling (HTTP 429)."""


# ===========================
# ProviderServerError
# ===========================
@dataclass
class ProviderServerError(ModelGatewayError):
    """Provider-side failure (HTTP 5xx)."""


# ---------------------------------------------------------------------------
# Messages, tool calls and streaming chunks
# ---------------------------------------------------------------------------

class Role(str, Enum):
    """
    Conversation roles:
      - system:     high-level instructions,
      - user:       the operator's request,
      - assistant:  model output (may request tools),
      - tool:       aggregated tool responses for the preceding assistant turn.
    """
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A complete tool invocation requested by the model."""
    id: str
    name: str
    arguments: str = ""
    type: str = "function"


@dataclass(slots=True, frozen=True)
class ToolResponse:
    """The textual outcome of one tool call, correlated by call id."""
    id: str
    name: str
    content: str


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Tool description offered to the model (name + JSON schema of arguments)."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(slots=True)
class LLMMessage:
    """
    A single conversation message.

    Fields:
      role:            system/user/assistant/tool,
      content:         plain text,
      tool_calls:      calls requested by an assistant turn,
      tool_responses:  results answering those calls (role "tool" only).
    """
    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_responses: List[ToolResponse] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_calls": [c.name for c in self.tool_calls],
            "tool_responses": [r.name for r in self.tool_responses],
        }

    @staticmethod
    def system(text: str) -> "LLMMessage":
        return LLMMessage(role=Role.SYSTEM.value, content=text)

    @staticmethod
    def user(text: str) -> "LLMMessage":
        return LLMMessage(role=Role.USER.value, content=text)

    @staticmethod
    def assistant(text: str, tool_calls: Optional[Sequence[ToolCall]] = None) -> "LLMMessage":
        return LLMMessage(role=Role.ASSISTANT.value, content=text, tool_calls=list(tool_calls or []))

    @staticmethod
    def tool_results(responses: Sequence[ToolResponse]) -> "LLMMessage":
        return LLMMessage(role=Role.TOOL.value, tool_responses=list(responses))


@dataclass(slots=True)
class ChatParams:
    """Generation parameters; `extra` is merged into the provider payload as-is."""
    max_tokens: int = 2048
    temperature: float = 0.2
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """
    One streamed fragment of a tool call. Fragments sharing an `id` belong to
    the same call; `arguments` holds a partial JSON string.
    """
    id: Optional[str]
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(slots=True)
class ChatChunk:
    """
    A single fragment of a streamed response.
      - delta: next piece of assistant text (may be empty),
      - tool_calls: tool-call fragments carried by this chunk,
      - finish_reason: optional end marker ("stop", "tool_calls", "length"),
      - usage: token usage if the provider reports it.
    """
    delta: str = ""
    tool_calls: List[ToolCallDelta] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------
class LLMProvider(Protocol):
    """
    Contract for concrete providers. `stream()` yields ChatChunk objects until
    the model has finished its turn; transport failures surface as
    ModelGatewayError subclasses.
    """

    def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolSpec] = (),
        params: Optional[ChatParams] = None,
    ) -> AsyncIterator[ChatChunk]:
        ...


# ---------------------------------------------------------------------------
# OpenAI wire-format adapters
# ---------------------------------------------------------------------------
def to_openai_messages(messages: Sequence[LLMMessage]) -> List[Dict[str, Any]]:
    """
    Maps LLMMessage -> OpenAI Chat API messages. An aggregated tool turn
    expands into one {"role": "tool", "tool_call_id": ...} message per response.
    """
    out: List[Dict[str, Any]] = []
    for m in messages:
        if m.role == Role.TOOL.value:
            for r in m.tool_responses:
                out.append({"role": "tool", "tool_call_id": r.id, "content": r.content})
            continue
        item: Dict[str, Any] = {"role": m.role, "content": m.content}
        if m.tool_calls:
            item["tool_calls"] = [
                {
                    "id": c.id,
                    "type": c.type,
                    "function": {"name": c.name, "arguments": c.arguments or "{}"},
                }
                for c in m.tool_calls
            ]
        out.append(item)
    return out


def to_openai_tools(tools: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
        }
        for t in tools
    ]


def render_tool_result(value: Any) -> str:
    """Renders a tool's return value as the text handed back to the model."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


__all__ = [
    "ModelGatewayError",
    "ProviderTimeout",
    "ProviderOverloaded",
    "ProviderServerError",
    "Role",
    "ToolCall",
    "ToolResponse",
    "ToolSpec",
    "LLMMessage",
    "ChatParams",
    "Usage",
    "ToolCallDelta",
    "ChatChunk",
    "LLMProvider",
    "to_openai_messages",
    "to_openai_tools",
    "render_tool_result",
]
