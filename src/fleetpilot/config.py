# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/config.py

Project: fleetpilot

Description:
    String-keyed runtime configuration for the orchestration core.

Responsibilities
----------------
- Typed getters (`get`, `get_int`, `get_float`, `get_bool`, `get_str_list`)
  that always fall back to a caller-supplied default.
- Lookup order: in-process overrides, then environment variables, then the
  default. A key such as ``ai.plan.max-step-retries`` maps to the environment
  variable ``AI_PLAN_MAX_STEP_RETRIES``.

Notes
-----
Invalid values never raise; they are logged at WARNING and the default wins.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

_ENV_SANITIZE = re.compile(r"[^A-Za-z0-9]+")
_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})


def env_name(key: str) -> str:
    """Maps a dotted config key to its environment variable name."""
    return _ENV_SANITIZE.sub("_", key).strip("_").upper()


class AgenticConfigService:
    """Reads orchestration settings from overrides and the process environment."""

    __slots__ = ("_overrides", "_environ")

    def __init__(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._overrides: Dict[str, str] = {k: str(v) for k, v in (overrides or {}).items()}
        self._environ = environ if environ is not None else os.environ

    def set(self, key: str, value: Any) -> None:
        self._overrides[key] = str(value)

    def unset(self, key: str) -> None:
        self._overrides.pop(key, None)

    def _raw(self, key: str) -> Optional[str]:
        if key in self._overrides:
            return self._overrides[key]
        return self._environ.get(env_name(key))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._raw(key)
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for config '{key}': {value!r}, using default {default}")
            return default

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid float for config '{key}': {value!r}, using default {default}")
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        logger.warning(f"Invalid boolean for config '{key}': {value!r}, using default {default}")
        return default

    def get_str_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        value = self.get(key)
        if value is None:
            return list(default or [])
        return [item.strip() for item in value.split(",") if item.strip()]


__all__ = ["AgenticConfigService", "env_name"]
