# SPDX-License-Identifier: Apache-2.0
# src/fleetpilot/model_gateway/providers/openai_provider.py
"""LLM provider for OpenAI-compatible Chat Completions endpoints (streaming).

Implements the `LLMProvider` protocol on top of `httpx.AsyncClient` with
`stream=true`, translating server-sent `data:` lines into `ChatChunk`
objects that carry text deltas and tool-call fragments.

Configuration (environment):
- OPENAI_API_KEY: API key (required unless passed explicitly).
- OPENAI_BASE_URL: base URL, default "https://api.openai.com/v1"; any
  compatible gateway (vLLM, Ollama, Azure proxy) works.
- OPENAI_MODEL: default model, "gpt-4o-mini".
- OPENAI_TIMEOUT: request timeout in seconds, default 120.

Notes:
- OpenAI sends a tool call's id only on its first fragment; later fragments
  carry just the `index`. The provider re-attaches the id so downstream
  accumulation can correlate fragments by id alone.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx

from ..base import (
    ChatChunk,
    ChatParams,
    LLMMessage,
    ModelGatewayError,
    ProviderOverloaded,
    ProviderServerError,
    ProviderTimeout,
    ToolCallDelta,
    ToolSpec,
    Usage,
    to_openai_messages,
    to_openai_tools,
)

logger = logging.getLogger(__name__)

# --- Configuration ---
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT: float = float(os.getenv("OPENAI_TIMEOUT", "120"))

_DATA_PREFIX = "data:"
_DONE_MARKER = "[DONE]"


class OpenAIProvider:
    """Asynchronous streaming client for the Chat Completions API.

    Attributes:
        model: Model name sent with every request.
        _client: Shared HTTP client for this provider instance.
    """

    __slots__ = ("model", "_client", "_base_url")

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        key = api_key if api_key is not None else OPENAI_API_KEY
        if not key:
            raise ModelGatewayError(
                "OpenAIProvider configuration failed: OPENAI_API_KEY is not set.",
                provider="openai",
            )
        self.model = model or OPENAI_MODEL
        self._base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {key}"},
            timeout=timeout or OPENAI_TIMEOUT,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _handle_error(e: httpx.HTTPStatusError) -> ModelGatewayError:
        """Maps an httpx error to the matching gateway exception."""
        status = e.response.status_code
        if status == 429:
            err = ProviderOverloaded.from_httpx(e, provider="openai", message="Rate limited / overloaded")
        elif status >= 500:
            err = ProviderServerError.from_httpx(e, provider="openai", message="Provider server error")
        else:
            err = ModelGatewayError.from_httpx(e, provider="openai")
        return err

    def _payload(
        self, messages: Sequence[LLMMessage], tools: Sequence[ToolSpec], params: ChatParams
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "stream": True,
            **params.extra,
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
        return payload

    async def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolSpec] = (),
        params: Optional[ChatParams] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Streams one assistant turn.

        Raises:
            ProviderOverloaded: HTTP 429.
            ProviderServerError: HTTP 5xx.
            ProviderTimeout: the request exceeded the client timeout.
            ModelGatewayError: any other HTTP or decoding failure.
        """
        payload = self._payload(messages, tools, params or ChatParams())
        ids_by_index: Dict[int, str] = {}

        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    chunk = self._parse_line(line, ids_by_index)
                    if chunk is not None:
                        yield chunk
        except httpx.HTTPStatusError as e:
            raise self._handle_error(e) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeout(
                "Provider HTTP timeout",
                provider="openai",
                timeout=self._client.timeout.read,
                endpoint=f"{self._base_url}/chat/completions",
            ) from e
        except httpx.HTTPError as e:
            raise ModelGatewayError(f"Transport error talking to OpenAI: {e}", provider="openai") from e

    @staticmethod
    def _parse_line(line: str, ids_by_index: Dict[int, str]) -> Optional[ChatChunk]:
        line = line.strip()
        if not line.startswith(_DATA_PREFIX):
            return None
        data = line[len(_DATA_PREFIX):].strip()
        if not data or data == _DONE_MARKER:
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            raise ModelGatewayError(
                f"Malformed stream event from OpenAI: {e}", provider="openai", details=data
            ) from e

        usage = None
        if isinstance(event.get("usage"), dict):
            usage = Usage(
                prompt_tokens=int(event["usage"].get("prompt_tokens") or 0),
                completion_tokens=int(event["usage"].get("completion_tokens") or 0),
            )

        choices = event.get("choices") or []
        if not choices:
            return ChatChunk(usage=usage) if usage else None

        choice = choices[0]
        delta = choice.get("delta") or {}
        fragments = []
        for raw in delta.get("tool_calls") or []:
            index = int(raw.get("index", 0))
            call_id = raw.get("id")
            if call_id:
                ids_by_index[index] = call_id
            else:
                call_id = ids_by_index.get(index)
            function = raw.get("function") or {}
            fragments.append(
                ToolCallDelta(
                    id=call_id,
                    type=raw.get("type"),
                    name=function.get("name"),
                    arguments=function.get("arguments"),
                )
            )

        return ChatChunk(
            delta=delta.get("content") or "",
            tool_calls=fragments,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
        )


__all__ = ["OpenAIProvider"]
