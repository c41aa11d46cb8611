"""JSONB encode/decode helpers for asyncpg without a registered codec."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def strip_nul(value: Any) -> Any:
    """Remove NUL characters from every string in *value*, keys included.

    PostgreSQL rejects ``\\u0000`` inside jsonb.
    """
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {strip_nul(key): strip_nul(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [strip_nul(item) for item in value]
    return value


def encode_jsonb(value: Any) -> str | None:
    """Serialize *value* for a ``$n::jsonb`` parameter; ``None`` stays SQL NULL."""
    if value is None:
        return None
    return json.dumps(strip_nul(value), default=str, sort_keys=True)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value.

    asyncpg returns JSONB columns as text when no custom codec is registered.
    A value stored double-encoded gets a second decode pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val
