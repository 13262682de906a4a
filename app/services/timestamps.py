# app/services/timestamps.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

logger = logging.getLogger(__name__)

_NULL_STRINGS = {"", "null", "none", "undefined", "invalid date"}


class ResolvedTimestamp(NamedTuple):
    value: datetime
    substituted: bool


def parse_utc(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into an aware UTC datetime.

    Accepted inputs
    ---------------
    - `datetime` (naive values are assumed to be UTC)
    - ISO-8601 strings, with or without a trailing `Z`
    - epoch numbers; values above 1e11 are treated as milliseconds
      (webhook `event_ts`), smaller ones as seconds

    Returns None if the value is missing or cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.lower() in _NULL_STRINGS:
            return None
        if text.isdigit():
            return parse_utc(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timestamp(value: Any, fallback: datetime, *, field: str = "timestamp") -> ResolvedTimestamp:
    """
    Parse `value`, substituting `fallback` when it is missing or unparsable.

    The substitution is logged and reported through `substituted=True` so
    callers can flag the resulting record instead of treating it as real
    historical data.
    """
    parsed = parse_utc(value)
    if parsed is not None:
        return ResolvedTimestamp(parsed, False)

    if value is None:
        logger.warning("Missing %s, substituting receipt time %s", field, fallback.isoformat())
    else:
        logger.warning(
            "Unparsable %s %r, substituting receipt time %s", field, value, fallback.isoformat()
        )
    return ResolvedTimestamp(fallback, True)
