"""validator.py — Pure validation of handoff requests and stored queue items.

No I/O and no exceptions: every function returns a ``ValidationResult``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from handoff_relay.config import ALL_PRIORITIES, ALL_STATUSES, HANDOFF_TTL_DAYS
from handoff_relay.serialization import _parse_timestamp, _unix_now

__all__ = [
    "ValidationResult",
    "validate_create_request",
    "validate_queue_item",
    "validate_update_request",
]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PRINCIPAL_ID_RE = re.compile(r"^[A-Za-z0-9_.:@\-]{1,128}$")
_QUEUE_ID_RE = re.compile(r"^hq_[a-zA-Z0-9]{16,32}$")
_NON_NEGATIVE_METRICS = (
    ("waitTime", "Wait time must be non-negative"),
    ("responseTime", "Response time must be non-negative"),
    ("resolutionTime", "Resolution time must be non-negative"),
)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _result(errors: List[str]) -> ValidationResult:
    return ValidationResult(is_valid=not errors, errors=errors)


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_metadata(metadata: Any) -> List[str]:
    if not isinstance(metadata, dict):
        return ["Metadata must be an object"]
    errors: List[str] = []

    user_info = metadata.get("userInfo")
    if user_info is not None:
        if not isinstance(user_info, dict):
            errors.append("userInfo must be an object")
        else:
            email = user_info.get("email")
            if email is not None and (not isinstance(email, str) or not _EMAIL_RE.match(email)):
                errors.append("Invalid email format in metadata")

    metrics = metadata.get("metrics")
    if metrics is not None:
        if not isinstance(metrics, dict):
            errors.append("metrics must be an object")
        else:
            for name, message in _NON_NEGATIVE_METRICS:
                value = metrics.get(name)
                if value is None:
                    continue
                if not _is_number(value) or value < 0:
                    errors.append(message)

    context = metadata.get("contextData")
    if context is not None:
        if not isinstance(context, dict):
            errors.append("contextData must be an object")
        else:
            previous = context.get("previousMessages")
            if previous is not None and (not _is_number(previous) or previous < 0):
                errors.append("Previous messages count must be non-negative")
            sentiment = context.get("sentimentScore")
            if sentiment is not None and (not _is_number(sentiment) or not -1 <= sentiment <= 1):
                errors.append("Sentiment score must be between -1 and 1")

    return errors


def validate_create_request(request: Any) -> ValidationResult:
    if not isinstance(request, dict):
        return _result(["Request body must be an object"])
    errors: List[str] = []
    if _blank(request.get("conversationId")):
        errors.append("Conversation ID is required")
    if _blank(request.get("userId")):
        errors.append("User ID is required")
    priority = request.get("priority")
    if priority is not None and priority not in ALL_PRIORITIES:
        errors.append("Invalid priority level")
    if request.get("metadata") is not None:
        errors.extend(_validate_metadata(request["metadata"]))
    return _result(errors)


def validate_update_request(request: Any) -> ValidationResult:
    if not isinstance(request, dict):
        return _result(["Request body must be an object"])
    errors: List[str] = []
    if _blank(request.get("queueId")):
        errors.append("Queue ID is required")
    status = request.get("status")
    if status is not None and status not in ALL_STATUSES:
        errors.append("Invalid status")
    advisor_id = request.get("advisorId")
    if advisor_id is not None and (not isinstance(advisor_id, str) or not _PRINCIPAL_ID_RE.match(advisor_id)):
        errors.append("Invalid advisor ID format")
    priority = request.get("priority")
    if priority is not None and priority not in ALL_PRIORITIES:
        errors.append("Invalid priority level")
    if request.get("metadata") is not None:
        errors.extend(_validate_metadata(request["metadata"]))
    return _result(errors)


def validate_queue_item(
    item: Any,
    *,
    now: Optional[int] = None,
    max_ttl_horizon_days: int = HANDOFF_TTL_DAYS + 1,
) -> ValidationResult:
    """Validate a full stored record before it is written.

    ``ttl`` must lie strictly after ``now`` and no further ahead than
    ``max_ttl_horizon_days``.
    """
    if not isinstance(item, dict):
        return _result(["Queue item must be an object"])
    errors: List[str] = []
    queue_id = item.get("queueId")
    if _blank(queue_id):
        errors.append("Queue ID is required")
    elif not _QUEUE_ID_RE.match(queue_id):
        errors.append("Invalid queue ID format")
    if _blank(item.get("conversationId")):
        errors.append("Conversation ID is required")
    if _blank(item.get("userId")):
        errors.append("User ID is required")
    if _parse_timestamp(item.get("createdAt")) is None:
        errors.append("Invalid creation timestamp")
    if _parse_timestamp(item.get("updatedAt")) is None:
        errors.append("Invalid update timestamp")

    status = item.get("status")
    if status not in ALL_STATUSES:
        errors.append("Invalid status")
    if item.get("priority") not in ALL_PRIORITIES:
        errors.append("Invalid priority level")

    advisor_id = item.get("advisorId")
    needs_advisor = status in ("assigned", "active", "completed")
    if needs_advisor and _blank(advisor_id):
        errors.append(f"Advisor ID is required when status is {status}")
    if not needs_advisor and advisor_id:
        errors.append(f"Advisor ID must not be set when status is {status}")

    ttl = item.get("ttl")
    if ttl is not None:
        current = _unix_now() if now is None else now
        horizon = current + max_ttl_horizon_days * 24 * 60 * 60
        if not _is_number(ttl) or not current < ttl <= horizon:
            errors.append("Invalid TTL value")

    if item.get("metadata") is not None:
        errors.extend(_validate_metadata(item["metadata"]))
    return _result(errors)

