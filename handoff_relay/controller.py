"""controller.py — Handoff state machine.

    pending -> assigned -> active -> completed
    pending | assigned | active -> cancelled
    pending -> timeout

Every transition is a conditional DynamoDB write on the current status, so
concurrent callers racing on one ``queueId`` produce exactly one winner and
the others get a CONFLICT. Public operations return ``(value, error)``;
mutations are never retried here.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from handoff_relay.cache import HandoffCache
from handoff_relay.config import PRIORITY_WEIGHTS, HandoffSettings, _TRANSITIONS
from handoff_relay.errors import ErrorKind, HandoffError
from handoff_relay.events import HandoffEventPublisher
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import HandoffEvent
from handoff_relay.persistence import HandoffStore
from handoff_relay.serialization import _epoch_ms, _now_ms, _now_z, _unix_now
from handoff_relay.validator import validate_create_request, validate_update_request

logger = logging.getLogger("handoff_relay")

__all__ = ["HandoffController", "Result"]

Result = Tuple[Optional[Any], Optional[HandoffError]]


def _sources(target: str) -> List[str]:
    return sorted(state for state, nxt in _TRANSITIONS.items() if target in nxt)


def _new_queue_id() -> str:
    return f"hq_{uuid.uuid4().hex}"


class HandoffController:
    def __init__(
        self,
        store: HandoffStore,
        cache: HandoffCache,
        publisher: HandoffEventPublisher,
        metrics: HandoffMetrics,
        settings: HandoffSettings,
    ):
        self.store = store
        self.cache = cache
        self.publisher = publisher
        self.metrics = metrics
        self.max_queue_size = settings.max_queue_size
        self.max_wait_ms = settings.max_wait_time_seconds * 1000
        self.ttl_seconds = settings.ttl_days * 24 * 60 * 60
        self.max_active_per_advisor = settings.max_active_per_advisor

    @staticmethod
    def _run(operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Result:
        try:
            return fn(*args, **kwargs), None
        except HandoffError as exc:
            log = logger.warning if exc.kind is ErrorKind.TRANSIENT_INFRA else logger.info
            log("%s rejected: %s (%s)", operation, exc.message, exc.code)
            return None, exc

    # ----- reads -----

    def get_handoff(self, queue_id: str) -> Result:
        return self._run("get_handoff", self._require, queue_id)

    def get_pending_handoffs(self, limit: Optional[int] = None) -> Result:
        """Pending handoffs, highest priority first, then oldest first."""
        return self._run("get_pending_handoffs", self._pending, limit)

    def list_handoffs(
        self,
        *,
        statuses: Optional[Sequence[str]] = None,
        priorities: Optional[Sequence[str]] = None,
        advisor_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Result:
        return self._run(
            "list_handoffs",
            self.store.get_handoffs_by_filters,
            statuses=statuses,
            priorities=priorities,
            advisor_id=advisor_id,
            user_id=user_id,
            limit=limit,
        )

    def _require(self, queue_id: str, for_update: bool = False) -> Dict[str, Any]:
        if not queue_id:
            raise HandoffError(ErrorKind.VALIDATION, "Queue ID is required")
        # transitions check status against the table, not a possibly stale cache entry
        if for_update:
            record = self.store.get_handoff_for_update(queue_id)
        else:
            record = self.store.get_handoff(queue_id)
        if record is None:
            raise HandoffError(ErrorKind.NOT_FOUND, f"Handoff '{queue_id}' not found", queue_id=queue_id)
        return record

    def _pending(self, limit: Optional[int]) -> List[Dict[str, Any]]:
        items = self.store.get_handoffs_by_status("pending")
        items.sort(
            key=lambda r: (
                -PRIORITY_WEIGHTS.get(str(r.get("priority")), 0),
                _epoch_ms(r.get("createdAt")) or 0,
                str(r.get("queueId")),
            )
        )
        return items[:limit] if limit else items

    # ----- create -----

    def create_handoff(self, request: Dict[str, Any]) -> Result:
        return self._run("create_handoff", self._create, request)

    def _create(self, request: Dict[str, Any]) -> Dict[str, Any]:
        check = validate_create_request(request)
        if not check.is_valid:
            raise HandoffError(ErrorKind.VALIDATION, "; ".join(check.errors), errors=check.errors)

        pending = self.store.count_by_status("pending")
        if pending >= self.max_queue_size:
            raise HandoffError(
                ErrorKind.QUEUE_FULL,
                "Handoff queue is full; try again later",
                pending=pending,
                max_queue_size=self.max_queue_size,
            )

        now = _now_z()
        record: Dict[str, Any] = {
            "queueId": _new_queue_id(),
            "conversationId": request["conversationId"].strip(),
            "userId": request["userId"].strip(),
            "status": "pending",
            "priority": request.get("priority") or "medium",
            "createdAt": now,
            "updatedAt": now,
            "ttl": _unix_now() + self.ttl_seconds,
        }
        if request.get("metadata"):
            record["metadata"] = request["metadata"]
        record = self.store.create_handoff(record)
        logger.info("handoff %s created for user %s (%s)", record["queueId"], record["userId"], record["priority"])
        self.metrics.record_created(record)
        self.publisher.publish_event(HandoffEvent.requested(record))
        return record

    # ----- transitions -----

    def _guard(self, record: Dict[str, Any], target: str, already_code: str = "HANDOFF_INVALID_STATUS") -> str:
        current = str(record.get("status"))
        if target not in _TRANSITIONS.get(current, set()):
            raise HandoffError(
                ErrorKind.CONFLICT,
                f"Cannot move handoff '{record.get('queueId')}' from {current} to {target}",
                code=already_code,
                queue_id=record.get("queueId"),
                current_status=current,
            )
        return current

    def assign_handoff(self, queue_id: str, advisor_id: str) -> Result:
        return self._run("assign_handoff", self._assign, queue_id, advisor_id)

    def _assign(self, queue_id: str, advisor_id: str) -> Dict[str, Any]:
        check = validate_update_request({"queueId": queue_id, "advisorId": advisor_id, "status": "assigned"})
        if not advisor_id:
            check.errors.append("Advisor ID is required")
        if check.errors:
            raise HandoffError(ErrorKind.VALIDATION, "; ".join(check.errors), errors=check.errors)

        record = self._require(queue_id, for_update=True)
        already = "HANDOFF_ALREADY_ASSIGNED" if record.get("advisorId") else "HANDOFF_INVALID_STATUS"
        self._guard(record, "assigned", already)

        if self.max_active_per_advisor > 0:
            load = self._advisor_load(advisor_id)
            if load >= self.max_active_per_advisor:
                raise HandoffError(
                    ErrorKind.CONFLICT,
                    f"Advisor '{advisor_id}' already holds {load} active handoffs",
                    code="HANDOFF_ADVISOR_BUSY",
                    advisor_id=advisor_id,
                    active_handoffs=load,
                )

        try:
            updated = self.store.update_handoff(
                queue_id,
                {"status": "assigned", "advisorId": advisor_id, "assignedAt": _now_z()},
                expected_status=["pending"],
            )
        except HandoffError as exc:
            if exc.kind is ErrorKind.CONFLICT:
                raise HandoffError(
                    ErrorKind.CONFLICT,
                    f"Handoff '{queue_id}' was assigned concurrently; refresh the pending list",
                    code="HANDOFF_ALREADY_ASSIGNED",
                    queue_id=queue_id,
                    current_status=exc.details.get("current_status"),
                ) from exc
            raise

        self.cache.invalidate_advisor_status(advisor_id)
        wait_ms = self.metrics.record_assigned(updated)
        logger.info("handoff %s assigned to %s after %d ms", queue_id, advisor_id, wait_ms)
        self.publisher.publish_event(HandoffEvent.assigned(updated, wait_ms))
        return updated

    def start_handoff(self, queue_id: str, advisor_id: Optional[str] = None) -> Result:
        return self._run("start_handoff", self._start, queue_id, advisor_id)

    def _start(self, queue_id: str, advisor_id: Optional[str]) -> Dict[str, Any]:
        record = self._require(queue_id, for_update=True)
        self._guard(record, "active")
        if advisor_id and record.get("advisorId") != advisor_id:
            raise HandoffError(
                ErrorKind.CONFLICT,
                f"Handoff '{queue_id}' is assigned to a different advisor",
                code="HANDOFF_ALREADY_ASSIGNED",
                queue_id=queue_id,
            )
        updated = self.store.update_handoff(
            queue_id,
            {"status": "active", "startedAt": _now_z()},
            expected_status=_sources("active"),
        )
        self.metrics.record_started(updated)
        self.publisher.publish_event(HandoffEvent.started(updated))
        return updated

    def complete_handoff(self, queue_id: str) -> Result:
        return self._run("complete_handoff", self._complete, queue_id)

    def _complete(self, queue_id: str) -> Dict[str, Any]:
        record = self._require(queue_id, for_update=True)
        previous = self._guard(record, "completed")
        updated = self.store.update_handoff(
            queue_id,
            {"status": "completed", "completedAt": _now_z()},
            expected_status=_sources("completed"),
        )
        if updated.get("advisorId"):
            self.cache.invalidate_advisor_status(updated["advisorId"])
        resolution_ms = self.metrics.record_completed(updated)
        logger.info("handoff %s completed after %d ms", queue_id, resolution_ms)
        self.publisher.publish_event(HandoffEvent.completed(updated, previous, resolution_ms))
        return updated

    def cancel_handoff(self, queue_id: str, reason: Optional[str] = None) -> Result:
        return self._run("cancel_handoff", self._cancel, queue_id, reason)

    def _cancel(self, queue_id: str, reason: Optional[str]) -> Dict[str, Any]:
        record = self._require(queue_id, for_update=True)
        previous = self._guard(record, "cancelled")
        advisor_id = record.get("advisorId")
        fields: Dict[str, Any] = {"status": "cancelled", "cancelledAt": _now_z()}
        if reason:
            fields["cancelReason"] = str(reason)[:500]
        # Pinned to the observed status so the advisor notified below is the one removed.
        updated = self.store.update_handoff(
            queue_id,
            fields,
            remove=["advisorId"],
            expected_status=[previous],
        )
        if advisor_id:
            self.cache.invalidate_advisor_status(advisor_id)
        self.metrics.record_cancelled(updated)
        self.publisher.publish_event(HandoffEvent.cancelled(updated, previous, advisor_id, reason))
        return updated

    # ----- sweeps -----

    def sweep_timeouts(self, now_ms: Optional[int] = None) -> Result:
        return self._run("sweep_timeouts", self._sweep_timeouts, now_ms)

    def _sweep_timeouts(self, now_ms: Optional[int]) -> int:
        current = _now_ms() if now_ms is None else now_ms
        timed_out = 0
        for record in self.store.get_handoffs_by_status("pending"):
            created_ms = _epoch_ms(record.get("createdAt"))
            if created_ms is None or current - created_ms <= self.max_wait_ms:
                continue
            queue_id = record["queueId"]
            try:
                updated = self.store.update_handoff(
                    queue_id,
                    {"status": "timeout", "timedOutAt": _now_z()},
                    expected_status=["pending"],
                )
            except HandoffError as exc:
                if exc.kind in (ErrorKind.CONFLICT, ErrorKind.NOT_FOUND):
                    logger.info("handoff %s left pending before timeout: %s", queue_id, exc.message)
                    continue
                raise
            timed_out += 1
            self.metrics.record_timed_out(updated)
            self.publisher.publish_event(HandoffEvent.status_updated(updated, "pending", reason="max_wait_exceeded"))
        if timed_out:
            logger.info("timed out %d pending handoffs", timed_out)
        return timed_out

    def cleanup_expired(self, now: Optional[int] = None) -> Result:
        return self._run("cleanup_expired", self.store.cleanup_expired_handoffs, now)

    # ----- advisor load -----

    def _advisor_load(self, advisor_id: str) -> int:
        cached = self.cache.get_advisor_status(advisor_id)
        if cached is not None and isinstance(cached.get("activeHandoffs"), int):
            return cached["activeHandoffs"]
        load = len(self.store.get_handoffs_by_advisor(advisor_id, statuses=("assigned", "active")))
        self.cache.set_advisor_status(
            advisor_id,
            {"advisorId": advisor_id, "activeHandoffs": load, "updatedAt": _now_z()},
        )
        return load
