# SPDX-License-Identifier: Apache-2.0
"""Current time tool; always offered to the model."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "tz": {"type": "string", "description": "IANA time zone name, e.g. Europe/Warsaw. Defaults to UTC."}
    },
}


def get_current_time(tz: Optional[str] = None) -> str:
    """Returns the current date and time in ISO 8601 format."""
    zone = timezone.utc
    if tz:
        try:
            zone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone '{tz}'.") from e
    return datetime.now(zone).isoformat(timespec="seconds")


__all__ = ["SCHEMA", "get_current_time"]
