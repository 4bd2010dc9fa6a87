from __future__ import annotations

import json
from datetime import date, datetime, time
from typing import Any, Dict


def json_default(value: Any) -> str:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def dump_json_object(value: Any) -> str:
    """Serialize for a `$n::jsonb` parameter."""
    if value is None:
        return "{}"
    return json.dumps(value, default=json_default)


def coerce_json_object(value: Any) -> Dict[str, Any]:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"raw": value}
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}
    return {}


def to_json_safe(value: Any) -> Any:
    """Round-trip through json so arbitrary objects become plain JSON values."""
    return json.loads(json.dumps(value, default=json_default))
