# SPDX-License-Identifier: Apache-2.0
"""Model gateway: message types, the streaming provider contract and routing."""

from .base import (
    ChatChunk,
    ChatParams,
    LLMMessage,
    LLMProvider,
    ModelGatewayError,
    ProviderOverloaded,
    ProviderServerError,
    ProviderTimeout,
    Role,
    ToolCall,
    ToolCallDelta,
    ToolResponse,
    ToolSpec,
    Usage,
)
from .router import ProviderRouter

__all__ = [
    "ChatChunk",
    "ChatParams",
    "LLMMessage",
    "LLMProvider",
    "ModelGatewayError",
    "ProviderOverloaded",
    "ProviderServerError",
    "ProviderTimeout",
    "ProviderRouter",
    "Role",
    "ToolCall",
    "ToolCallDelta",
    "ToolResponse",
    "ToolSpec",
    "Usage",
]
