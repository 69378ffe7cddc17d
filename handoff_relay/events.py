"""events.py — Handoff domain events: EventBridge publish plus live notification.

``publish_event`` never raises. The bus write and each notification are
independent best-effort steps; failures are logged and counted.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from handoff_relay.config import HandoffSettings
from handoff_relay.errors import HandoffError
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import DeliveryReport, HandoffEvent, PushMessage
from handoff_relay.push import PushNotifier
from handoff_relay.serialization import _json_default, _parse_timestamp

logger = logging.getLogger("handoff_relay")

__all__ = ["HandoffEventPublisher"]

_PUSH_TYPE_BY_EVENT: Dict[str, str] = {
    "handoff_requested": "HANDOFF_REQUEST",
    "advisor_assigned": "HANDOFF_ACCEPTED",
    "handoff_started": "HANDOFF_STARTED",
    "handoff_completed": "HANDOFF_COMPLETED",
    "handoff_cancelled": "HANDOFF_CANCELLED",
    "status_updated": "HANDOFF_STATUS",
}


class HandoffEventPublisher:
    def __init__(
        self,
        events_client: Any,
        notifier: PushNotifier,
        metrics: HandoffMetrics,
        settings: HandoffSettings,
    ):
        self.events = events_client
        self.notifier = notifier
        self.metrics = metrics
        self.bus = settings.event_bus
        self.source = settings.event_source
        self.status_messages = settings.status_messages

    def publish_event(self, event: HandoffEvent) -> Dict[str, Any]:
        """Write ``event`` to the bus, then notify the parties it concerns."""
        published = self._put_event(event)
        reports = self._notify(event)
        return {
            "published": published,
            "delivered": sum(r.delivered for r in reports),
            "stale": sum(len(r.stale) for r in reports),
            "failed": sum(len(r.failed) for r in reports),
        }

    def _put_event(self, event: HandoffEvent) -> bool:
        entry: Dict[str, Any] = {
            "Source": self.source,
            "DetailType": event.type,
            "Detail": json.dumps(event.to_detail(), default=_json_default),
            "EventBusName": self.bus,
        }
        timestamp = _parse_timestamp(event.timestamp)
        if timestamp is not None:
            entry["Time"] = timestamp
        try:
            resp = self.events.put_events(Entries=[entry])
        except (ClientError, BotoCoreError) as exc:
            logger.warning("event %s for %s not published: %s", event.type, event.queue_id, exc)
            self.metrics.increment("EventPublishFailures", event_type=event.type)
            return False
        if int(resp.get("FailedEntryCount") or 0) > 0:
            failed = (resp.get("Entries") or [{}])[0]
            logger.warning(
                "event %s for %s rejected by bus: %s",
                event.type,
                event.queue_id,
                failed.get("ErrorCode") or failed.get("ErrorMessage"),
            )
            self.metrics.increment("EventPublishFailures", event_type=event.type)
            return False
        self.metrics.increment("HandoffEventPublished", event_type=event.type)
        return True

    # ----- notification routing -----

    def _text(self, status: Optional[str], role: str) -> str:
        return (self.status_messages.get(status or "") or {}).get(role, "")

    def _message(self, event: HandoffEvent, role: str) -> PushMessage:
        payload = event.to_detail()
        payload["message"] = self._text(event.status, role)
        return PushMessage(type=_PUSH_TYPE_BY_EVENT[event.type], payload=payload)

    def _to_user(self, user_id: Optional[str], message: PushMessage) -> Optional[DeliveryReport]:
        if not user_id:
            return None
        try:
            return self.notifier.send_to_user(user_id, message)
        except HandoffError as exc:
            logger.warning("notification %s to %s failed: %s", message.type, user_id, exc)
            self.metrics.increment("NotificationFailures", message_type=message.type)
            return None

    def _to_advisors(self, message: PushMessage) -> Optional[DeliveryReport]:
        try:
            return self.notifier.broadcast_message(message, role="advisor")
        except HandoffError as exc:
            logger.warning("advisor broadcast %s failed: %s", message.type, exc)
            self.metrics.increment("NotificationFailures", message_type=message.type)
            return None

    def _notify(self, event: HandoffEvent) -> List[DeliveryReport]:
        if event.type not in _PUSH_TYPE_BY_EVENT:
            logger.debug("event %s has no live notification", event.type)
            return []
        reports: List[Optional[DeliveryReport]] = []
        if event.type == "handoff_requested":
            reports.append(self._to_advisors(self._message(event, "advisor")))
            reports.append(self._to_user(event.user_id, self._message(event, "user")))
        else:
            reports.append(self._to_user(event.user_id, self._message(event, "user")))
            if event.advisor_id:
                reports.append(self._to_user(event.advisor_id, self._message(event, "advisor")))
        return [r for r in reports if r is not None]
