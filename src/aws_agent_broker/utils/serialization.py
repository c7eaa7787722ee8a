"""JSON serialization utilities."""

from __future__ import annotations

import base64
import datetime
import decimal
import json
from typing import Any


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        if obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, bytes):
        try:
            return obj.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(obj).decode("utf-8")
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


def dumps_line(payload: Any) -> str:
    """Serialize one record as a single NDJSON line (no trailing newline)."""
    return json.dumps(payload, default=json_default, separators=(",", ":"), sort_keys=False)


def to_plain(value: Any) -> Any:
    """Round-trip through JSON so SDK responses become plain dicts and lists."""
    return json.loads(json.dumps(value, default=json_default))
