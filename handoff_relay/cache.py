"""cache.py — Redis cache for handoff queue items and advisor status.

The cache is an optimization only. Every method catches its own failures,
logs them, counts ``CacheErrors`` and returns the "miss" value, so callers
fall back to the store.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from handoff_relay.metrics import HandoffMetrics
from handoff_relay.serialization import _json_default

logger = logging.getLogger("handoff_relay")

__all__ = ["HandoffCache"]


class HandoffCache:
    def __init__(
        self,
        client: Any,
        metrics: HandoffMetrics,
        *,
        key_prefix: str = "handoff:",
        item_ttl_seconds: int = 300,
        advisor_ttl_seconds: int = 60,
    ):
        self.client = client
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.item_ttl_seconds = item_ttl_seconds
        self.advisor_ttl_seconds = advisor_ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _queue_key(self, queue_id: str) -> str:
        return f"{self.key_prefix}queue:{queue_id}"

    def _advisor_key(self, advisor_id: str) -> str:
        return f"{self.key_prefix}advisor:{advisor_id}"

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        logger.warning("cache %s failed for %s: %s", op, key, exc)
        self.metrics.increment("CacheErrors", operation=op)

    # ----- generic operations -----

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            raw = self.client.get(key)
            return json.loads(raw) if raw else None
        except Exception as exc:
            self._failed("get", key, exc)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self.client.setex(key, int(ttl_seconds), json.dumps(value, default=_json_default)))
        except Exception as exc:
            self._failed("set", key, exc)
            return False

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self.client.delete(key))
        except Exception as exc:
            self._failed("delete", key, exc)
            return False

    def invalidate_by_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` (glob). Uses SCAN, never KEYS."""
        if not self.enabled:
            return 0
        removed = 0
        try:
            batch = []
            for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += int(self.client.delete(*batch) or 0)
                    batch = []
            if batch:
                removed += int(self.client.delete(*batch) or 0)
        except Exception as exc:
            self._failed("invalidate", pattern, exc)
        return removed

    # ----- queue items -----

    def get_queue_item(self, queue_id: str) -> Optional[Dict[str, Any]]:
        value = self.get(self._queue_key(queue_id))
        return value if isinstance(value, dict) else None

    def set_queue_item(self, record: Dict[str, Any]) -> bool:
        return self.set(self._queue_key(record["queueId"]), record, self.item_ttl_seconds)

    def invalidate_queue_item(self, queue_id: str) -> bool:
        return self.delete(self._queue_key(queue_id))

    def invalidate_all_queue_items(self) -> int:
        return self.invalidate_by_pattern(f"{self.key_prefix}queue:*")

    # ----- advisor status -----

    def get_advisor_status(self, advisor_id: str) -> Optional[Dict[str, Any]]:
        value = self.get(self._advisor_key(advisor_id))
        return value if isinstance(value, dict) else None

    def set_advisor_status(self, advisor_id: str, status: Dict[str, Any]) -> bool:
        return self.set(self._advisor_key(advisor_id), status, self.advisor_ttl_seconds)

    def invalidate_advisor_status(self, advisor_id: str) -> bool:
        return self.delete(self._advisor_key(advisor_id))
