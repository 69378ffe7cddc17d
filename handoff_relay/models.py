"""models.py — Typed records exchanged between handoff components.

Handoff queue items are stored and returned as plain dicts keyed by their
DynamoDB attribute names (``queueId``, ``status``, ...). Everything that
crosses a channel boundary (events, push messages, queue messages,
connections) has a dataclass here.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from handoff_relay.serialization import _json_default, _now_z

__all__ = [
    "CONNECTION_STATUSES",
    "Connection",
    "DeliveryReport",
    "EVENT_TYPES",
    "HandoffEvent",
    "MAX_EXTENSION_KEYS",
    "MESSAGE_TYPES",
    "PUSH_TYPES",
    "PushMessage",
    "QueueMessage",
    "ReceivedMessage",
]

EVENT_TYPES = (
    "handoff_requested",
    "advisor_assigned",
    "handoff_started",
    "message_sent",
    "handoff_completed",
    "handoff_cancelled",
    "status_updated",
)

PUSH_TYPES = (
    "HANDOFF_REQUEST",
    "HANDOFF_ACCEPTED",
    "HANDOFF_STARTED",
    "HANDOFF_COMPLETED",
    "HANDOFF_CANCELLED",
    "HANDOFF_STATUS",
    "MESSAGE",
)

MESSAGE_TYPES = ("message", "handoff", "system")
CONNECTION_STATUSES = ("CONNECTED", "IN_PROGRESS", "DISCONNECTED")
MAX_EXTENSION_KEYS = 16
_SCALARS = (str, int, float, bool, type(None))


def _bounded_extensions(extensions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep at most MAX_EXTENSION_KEYS scalar entries."""
    out: Dict[str, Any] = {}
    for key, value in (extensions or {}).items():
        if len(out) >= MAX_EXTENSION_KEYS:
            break
        if isinstance(key, str) and isinstance(value, _SCALARS):
            out[key] = value
    return out

# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HandoffEvent:
    """Domain event tagged by ``type``.

    Each kind fills the subset of optional fields that applies to it; use
    the named constructors rather than building events by hand.
    """

    type: str
    queue_id: str
    user_id: str
    conversation_id: Optional[str] = None
    advisor_id: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    previous_status: Optional[str] = None
    wait_time_ms: Optional[int] = None
    resolution_time_ms: Optional[int] = None
    reason: Optional[str] = None
    timestamp: str = field(default_factory=_now_z)
    extensions: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown handoff event type '{self.type}'")
        object.__setattr__(self, "extensions", _bounded_extensions(self.extensions))

    @classmethod
    def requested(cls, record: Dict[str, Any]) -> "HandoffEvent":
        return cls(
            type="handoff_requested",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            priority=record.get("priority"),
            status=record.get("status"),
        )

    @classmethod
    def assigned(cls, record: Dict[str, Any], wait_time_ms: int) -> "HandoffEvent":
        return cls(
            type="advisor_assigned",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            advisor_id=record.get("advisorId"),
            priority=record.get("priority"),
            status=record.get("status"),
            previous_status="pending",
            wait_time_ms=wait_time_ms,
        )

    @classmethod
    def started(cls, record: Dict[str, Any]) -> "HandoffEvent":
        return cls(
            type="handoff_started",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            advisor_id=record.get("advisorId"),
            status=record.get("status"),
            previous_status="assigned",
        )

    @classmethod
    def completed(cls, record: Dict[str, Any], previous_status: str, resolution_time_ms: int) -> "HandoffEvent":
        return cls(
            type="handoff_completed",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            advisor_id=record.get("advisorId"),
            status=record.get("status"),
            previous_status=previous_status,
            resolution_time_ms=resolution_time_ms,
        )

    @classmethod
    def cancelled(
        cls,
        record: Dict[str, Any],
        previous_status: str,
        advisor_id: Optional[str],
        reason: Optional[str],
    ) -> "HandoffEvent":
        return cls(
            type="handoff_cancelled",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            advisor_id=advisor_id,
            status=record.get("status"),
            previous_status=previous_status,
            reason=reason,
        )

    @classmethod
    def status_updated(cls, record: Dict[str, Any], previous_status: str, reason: Optional[str] = None) -> "HandoffEvent":
        return cls(
            type="status_updated",
            queue_id=record["queueId"],
            user_id=record["userId"],
            conversation_id=record.get("conversationId"),
            advisor_id=record.get("advisorId"),
            status=record.get("status"),
            previous_status=previous_status,
            reason=reason,
        )

    def to_detail(self) -> Dict[str, Any]:
        """EventBridge ``Detail`` payload (None fields dropped)."""
        detail = {
            "type": self.type,
            "queueId": self.queue_id,
            "userId": self.user_id,
            "conversationId": self.conversation_id,
            "advisorId": self.advisor_id,
            "priority": self.priority,
            "status": self.status,
            "previousStatus": self.previous_status,
            "waitTimeMs": self.wait_time_ms,
            "resolutionTimeMs": self.resolution_time_ms,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }
        out = {k: v for k, v in detail.items() if v is not None}
        if self.extensions:
            out["extensions"] = dict(self.extensions)
        return out

# ---------------------------------------------------------------------------
# Push channel payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PushMessage:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_z)

    def __post_init__(self) -> None:
        if self.type not in PUSH_TYPES:
            raise ValueError(f"Unknown push message type '{self.type}'")

    def to_bytes(self) -> bytes:
        body = {"type": self.type, "payload": self.payload, "timestamp": self.timestamp}
        return json.dumps(body, default=_json_default).encode("utf-8")


@dataclass
class DeliveryReport:
    """Outcome of one fan-out call. Zero recipients is not an error."""

    attempted: int = 0
    delivered: int = 0
    stale: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def merge(self, other: "DeliveryReport") -> "DeliveryReport":
        self.attempted += other.attempted
        self.delivered += other.delivered
        self.stale.extend(other.stale)
        self.failed.extend(other.failed)
        return self

# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@dataclass
class Connection:
    connection_id: str
    user_id: str
    status: str = "CONNECTED"
    connected_at: int = 0
    last_activity: int = 0
    ttl: int = 0
    platform: str = "web"
    role: str = "user"
    in_handoff: bool = False
    handoff_id: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "userId": self.user_id,
            "status": self.status,
            "connectedAt": self.connected_at,
            "lastActivity": self.last_activity,
            "ttl": self.ttl,
            "metadata": {
                "platform": self.platform,
                "role": self.role,
                "inHandoff": self.in_handoff,
                "handoffId": self.handoff_id,
            },
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Connection":
        meta = item.get("metadata") or {}
        return cls(
            connection_id=str(item["connectionId"]),
            user_id=str(item.get("userId") or ""),
            status=str(item.get("status") or "CONNECTED"),
            connected_at=int(item.get("connectedAt") or 0),
            last_activity=int(item.get("lastActivity") or 0),
            ttl=int(item.get("ttl") or 0),
            platform=str(meta.get("platform") or "web"),
            role=str(meta.get("role") or "user"),
            in_handoff=bool(meta.get("inHandoff", False)),
            handoff_id=meta.get("handoffId"),
        )

# ---------------------------------------------------------------------------
# Work queue messages
# ---------------------------------------------------------------------------


@dataclass
class QueueMessage:
    type: str
    payload: Dict[str, Any]
    user_id: str
    priority: str = "medium"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_now_z)
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown queue message type '{self.type}'")
        if not self.user_id:
            raise ValueError("Queue message requires a userId")

    def dedupe_key(self) -> str:
        """Stable per (id, retryCount): duplicate sends collapse, requeues do not."""
        return hashlib.sha256(f"{self.id}:{self.retry_count}".encode("utf-8")).hexdigest()

    def to_body(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "priority": self.priority,
        }
        if self.last_error is not None:
            metadata["lastError"] = self.last_error
        if self.last_attempt is not None:
            metadata["lastAttempt"] = self.last_attempt
        return {"id": self.id, "type": self.type, "payload": self.payload, "metadata": metadata}

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "QueueMessage":
        if not isinstance(body, dict):
            raise ValueError(f"Queue message body must be an object, got {type(body).__name__}")
        meta = body.get("metadata") or {}
        if not isinstance(meta, dict):
            raise ValueError("Queue message metadata must be an object")
        return cls(
            id=str(body["id"]),
            type=str(body.get("type") or ""),
            payload=dict(body.get("payload") or {}),
            user_id=str(meta.get("userId") or ""),
            priority=str(meta.get("priority") or "medium"),
            timestamp=str(meta.get("timestamp") or _now_z()),
            retry_count=int(meta.get("retryCount") or 0),
            last_error=meta.get("lastError"),
            last_attempt=meta.get("lastAttempt"),
        )


@dataclass
class ReceivedMessage:
    message: QueueMessage
    receipt_handle: str
    message_id: str = ""
    receive_count: int = 1
