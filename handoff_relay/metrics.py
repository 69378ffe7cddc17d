"""metrics.py — Canonical handoff metrics contract.

Metrics are emitted as ``[OBSERVABILITY]`` JSON log lines and counted on
the instance. Recording a metric never raises.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from handoff_relay.serialization import _emit_structured_observability, _epoch_ms, _now_ms

logger = logging.getLogger("handoff_relay")

__all__ = ["HandoffMetrics"]


class HandoffMetrics:
    """Counters and latencies for the handoff lifecycle and its infrastructure."""

    def __init__(self, component: str = "handoff_relay"):
        self.component = component
        self.counters: Counter = Counter()
        self.latencies: Dict[str, List[int]] = {}
        self._lock = threading.Lock()

    # ----- primitives -----

    def increment(self, name: str, value: int = 1, **dimensions: Any) -> None:
        try:
            with self._lock:
                self.counters[name] += value
            _emit_structured_observability(
                component=self.component,
                event="metric",
                extra={"metric": name, "value": value, "unit": "Count", "dimensions": dimensions},
            )
        except Exception:
            logger.warning("metric %s not recorded", name, exc_info=True)

    def latency(self, name: str, value_ms: int, queue_id: Optional[str] = None, **dimensions: Any) -> None:
        try:
            value_ms = max(0, int(value_ms))
            with self._lock:
                self.latencies.setdefault(name, []).append(value_ms)
            _emit_structured_observability(
                component=self.component,
                event="metric",
                queue_id=queue_id,
                latency_ms=value_ms,
                extra={"metric": name, "value": value_ms, "unit": "Milliseconds", "dimensions": dimensions},
            )
        except Exception:
            logger.warning("latency metric %s not recorded", name, exc_info=True)

    # ----- handoff lifecycle -----

    def record_created(self, record: Dict[str, Any]) -> None:
        priority = str(record.get("priority") or "medium")
        self.increment("HandoffCreated", priority=priority)
        self.increment(f"HandoffCreated_{priority}")

    def record_assigned(self, record: Dict[str, Any]) -> int:
        wait_ms = self._elapsed_since_created(record)
        self.increment("HandoffAssigned")
        self.latency("HandoffWaitTime", wait_ms, queue_id=record.get("queueId"))
        return wait_ms

    def record_started(self, record: Dict[str, Any]) -> None:
        self.increment("HandoffStarted")

    def record_completed(self, record: Dict[str, Any]) -> int:
        resolution_ms = self._elapsed_since_created(record)
        self.increment("HandoffCompleted")
        self.latency("HandoffResolutionTime", resolution_ms, queue_id=record.get("queueId"))
        return resolution_ms

    def record_cancelled(self, record: Dict[str, Any]) -> None:
        self.increment("HandoffCancelled")

    def record_timed_out(self, record: Dict[str, Any]) -> None:
        self.increment("HandoffTimedOut")
        self.latency("HandoffWaitTime", self._elapsed_since_created(record), queue_id=record.get("queueId"), outcome="timeout")

    @staticmethod
    def _elapsed_since_created(record: Dict[str, Any]) -> int:
        created_ms = _epoch_ms(record.get("createdAt"))
        if created_ms is None:
            return 0
        return max(0, _now_ms() - created_ms)
