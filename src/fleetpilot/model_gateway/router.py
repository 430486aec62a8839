# SPDX-License-Identifier: Apache-2.0
# src/fleetpilot/model_gateway/router.py
"""Process-scoped router and model-instance cache for LLM providers.

The orchestrator asks for a provider by `(provider, model)`; the router
creates it lazily on first use and hands out the same instance afterwards,
so every turn that targets a given model shares one HTTP client.

Design points:
- Registry pattern: provider factories are registered by name, so adding a
  provider does not touch routing logic.
- Double-checked creation under `asyncio.Lock` so concurrent turns never
  build two clients for the same key.
- `shutdown()` closes every cached provider that exposes `aclose()`.

Configuration:
- `MODEL_PROVIDER`: provider used when a request does not name one ("openai").
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Dict, Optional, Tuple

from fleetpilot.exceptions import ProviderNotFoundError

from .base import LLMProvider
from .providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Optional[str]], LLMProvider]


class ProviderRouter:
    """Creates, caches and closes provider instances keyed by provider and model."""

    __slots__ = ("_factories", "_instances", "_lock", "_default_provider")

    def __init__(self, default_provider: Optional[str] = None) -> None:
        self._factories: Dict[str, ProviderFactory] = {}
        self._instances: Dict[Tuple[str, Optional[str]], LLMProvider] = {}
        self._lock = asyncio.Lock()
        self._default_provider = (default_provider or os.getenv("MODEL_PROVIDER", "openai")).lower()

        self.register("openai", OpenAIProvider)

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Registers a provider factory; it is called with the model name (or None)."""
        self._factories[name.lower()] = factory

    async def get_provider(self, provider: Optional[str] = None, model: Optional[str] = None) -> LLMProvider:
        """Returns the shared provider instance for `(provider, model)`.

        Raises:
            ProviderNotFoundError: the provider name is not registered.
        """
        name = (provider or self._default_provider).lower()
        key = (name, model or None)
        instance = self._instances.get(key)
        if instance is not None:
            return instance

        async with self._lock:
            instance = self._instances.get(key)
            if instance is not None:
                return instance

            factory = self._factories.get(name)
            if factory is None:
                raise ProviderNotFoundError(name)

            logger.info(f"Initializing LLM provider '{name}' (model={model or 'default'})")
            instance = factory(model or None)
            self._instances[key] = instance
            return instance

    async def shutdown(self) -> None:
        async with self._lock:
            instances = list(self._instances.values())
            self._instances.clear()
        for instance in instances:
            aclose = getattr(instance, "aclose", None)
            if callable(aclose):
                try:
                    await aclose()
                except Exception as e:
                    logger.error(f"Error while closing LLM provider {instance.__class__.__name__}: {e}", exc_info=True)


__all__ = ["ProviderRouter", "ProviderFactory"]
