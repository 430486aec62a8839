# SPDX-License-Identifier: Apache-2.0
"""Unit tests for AgenticConfigService.

Scope:
- Lookup order: overrides, environment, default.
- Typed getters and their handling of invalid values.
"""

from __future__ import annotations

import logging

from fleetpilot.config import AgenticConfigService, env_name


def test_env_name_maps_dotted_keys() -> None:
    assert env_name("ai.plan.max-step-retries") == "AI_PLAN_MAX_STEP_RETRIES"


def test_override_wins_over_environment() -> None:
    cfg = AgenticConfigService({"ai.plan.max-step-retries": 5}, environ={"AI_PLAN_MAX_STEP_RETRIES": "1"})
    assert cfg.get_int("ai.plan.max-step-retries", 2) == 5

    cfg.unset("ai.plan.max-step-retries")
    assert cfg.get_int("ai.plan.max-step-retries", 2) == 1


def test_default_when_missing_or_blank() -> None:
    cfg = AgenticConfigService(environ={"AI_PLANNING_ENABLED": "  "})
    assert cfg.get_bool("ai.planning.enabled", True) is True
    assert cfg.get("ai.prompt.base", "fallback") == "fallback"


def test_invalid_int_logs_and_uses_default(caplog) -> None:
    cfg = AgenticConfigService({"ai.dag.max-concurrent-steps": "many"}, environ={})
    with caplog.at_level(logging.WARNING):
        assert cfg.get_int("ai.dag.max-concurrent-steps", 5) == 5
    assert "Invalid integer" in caplog.text


def test_bool_and_float_parsing() -> None:
    cfg = AgenticConfigService(
        {"a.yes": "YES", "a.off": "off", "a.bad": "maybe", "a.f": "0.25"},
        environ={},
    )
    assert cfg.get_bool("a.yes", False) is True
    assert cfg.get_bool("a.off", True) is False
    assert cfg.get_bool("a.bad", True) is True
    assert cfg.get_float("a.f", 1.0) == 0.25


def test_str_list() -> None:
    cfg = AgenticConfigService({"a.list": "x, y,,z "}, environ={})
    assert cfg.get_str_list("a.list") == ["x", "y", "z"]
    assert cfg.get_str_list("a.missing", ["d"]) == ["d"]
