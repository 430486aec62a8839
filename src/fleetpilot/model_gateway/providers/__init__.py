# SPDX-License-Identifier: Apache-2.0
"""Concrete LLM providers."""

from .openai_provider import OpenAIProvider

__all__ = ["OpenAIProvider"]
