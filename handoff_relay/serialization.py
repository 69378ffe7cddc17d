"""serialization.py — DynamoDB (de)serialization, timestamps, observability lines."""
from __future__ import annotations

import datetime as dt
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

logger = logging.getLogger("handoff_relay")

__all__ = [
    "_deserialize",
    "_emit_structured_observability",
    "_epoch_ms",
    "_json_default",
    "_now_ms",
    "_now_z",
    "_parse_timestamp",
    "_serialize",
    "_serialize_item",
    "_unix_now",
]

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

_deserializer = TypeDeserializer()
_serializer = TypeSerializer()


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [_from_dynamo(v) for v in value]
    return value


def _serialize(value: Any) -> Dict[str, Any]:
    """Serialize a Python value for DynamoDB (floats become Decimal)."""
    return _serializer.serialize(_to_dynamo(value))


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to plain Python values (no Decimals)."""
    return {k: _from_dynamo(_deserializer.deserialize(v)) for k, v in raw.items()}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, set):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_now() -> int:
    return int(time.time())


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed). Returns None if unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _epoch_ms(value: Any) -> Optional[int]:
    parsed = _parse_timestamp(value)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)

# ---------------------------------------------------------------------------
# Structured observability
# ---------------------------------------------------------------------------


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    queue_id: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "queue_id": str(queue_id or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=_json_default))
