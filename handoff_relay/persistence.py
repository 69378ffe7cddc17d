"""persistence.py — Handoff queue DynamoDB persistence with cache-aside reads.

The table is the system of record. Single-item reads go through the cache
(``get_handoff``); transition pre-checks (``get_handoff_for_update``) read
the table consistently. Every write refreshes the cached copy, or drops it
when the cache write fails. List queries always hit the table.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from handoff_relay.cache import HandoffCache
from handoff_relay.config import HandoffSettings
from handoff_relay.errors import ErrorKind, HandoffError, _client_error_code, _from_aws_error
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.serialization import _deserialize, _now_z, _serialize, _serialize_item, _unix_now
from handoff_relay.validator import validate_queue_item

logger = logging.getLogger("handoff_relay")

__all__ = ["HandoffStore", "_build_update", "_in_clause"]

# ---------------------------------------------------------------------------
# Expression helpers
# ---------------------------------------------------------------------------


def _in_clause(
    attr_placeholder: str,
    values: Sequence[str],
    prefix: str,
    expr_values: Dict[str, Any],
) -> str:
    """Render ``#attr IN (:p0, :p1)`` and register the values."""
    placeholders = []
    for idx, value in enumerate(values):
        ph = f":{prefix}{idx}"
        expr_values[ph] = _serialize(value)
        placeholders.append(ph)
    return f"{attr_placeholder} IN ({', '.join(placeholders)})"


def _build_update(
    updates: Dict[str, Any],
    remove: Iterable[str] = (),
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    set_parts: List[str] = []
    for idx, (attr, value) in enumerate(updates.items()):
        names[f"#u{idx}"] = attr
        values[f":u{idx}"] = _serialize(value)
        set_parts.append(f"#u{idx} = :u{idx}")
    remove_parts: List[str] = []
    for idx, attr in enumerate(remove):
        names[f"#r{idx}"] = attr
        remove_parts.append(f"#r{idx}")
    expression = "SET " + ", ".join(set_parts)
    if remove_parts:
        expression += " REMOVE " + ", ".join(remove_parts)
    return expression, names, values


class HandoffStore:
    """Durable handoff queue client backed by DynamoDB and a ``HandoffCache``."""

    def __init__(self, ddb: Any, cache: HandoffCache, metrics: HandoffMetrics, settings: HandoffSettings):
        self.ddb = ddb
        self.cache = cache
        self.metrics = metrics
        self.table = settings.queue_table
        self.status_index = settings.status_index
        self.advisor_index = settings.advisor_index
        self.max_ttl_horizon_days = settings.max_ttl_horizon_days

    @staticmethod
    def _key(queue_id: str) -> Dict[str, Any]:
        return {"queueId": _serialize(queue_id)}

    # ----- single item reads -----

    def _read_from_store(self, queue_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self.ddb.get_item(TableName=self.table, Key=self._key(queue_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "get_handoff", queue_id=queue_id) from exc
        raw = resp.get("Item")
        return _deserialize(raw) if raw else None

    def _refresh_cache(self, record: Dict[str, Any]) -> None:
        """Write-through; a failed set drops the entry so no stale copy outlives the write."""
        if self.cache.enabled and not self.cache.set_queue_item(record):
            self.cache.invalidate_queue_item(record["queueId"])

    def get_handoff(self, queue_id: str) -> Optional[Dict[str, Any]]:
        """Cache-aside read: cache hit returns directly, a miss reads the table and warms the cache."""
        cached = self.cache.get_queue_item(queue_id)
        if cached is not None:
            self.metrics.increment("HandoffCacheHit")
            return cached
        self.metrics.increment("HandoffCacheMiss")
        record = self._read_from_store(queue_id)
        if record is not None:
            self._refresh_cache(record)
        return record

    def get_handoff_for_update(self, queue_id: str) -> Optional[Dict[str, Any]]:
        """Consistent table read for transition pre-checks; the cache is refreshed, never consulted."""
        record = self._read_from_store(queue_id)
        if record is None:
            self.cache.invalidate_queue_item(queue_id)
        else:
            self._refresh_cache(record)
        return record

    # ----- writes -----

    def create_handoff(self, item: Dict[str, Any]) -> Dict[str, Any]:
        check = validate_queue_item(item, max_ttl_horizon_days=self.max_ttl_horizon_days)
        if not check.is_valid:
            raise HandoffError(ErrorKind.VALIDATION, "Invalid queue item", errors=check.errors)
        try:
            self.ddb.put_item(
                TableName=self.table,
                Item=_serialize_item(item),
                ConditionExpression="attribute_not_exists(queueId)",
            )
        except ClientError as exc:
            if _client_error_code(exc) == "ConditionalCheckFailedException":
                raise HandoffError(
                    ErrorKind.CONFLICT,
                    f"Handoff '{item['queueId']}' already exists",
                    code="HANDOFF_DUPLICATE",
                    queue_id=item["queueId"],
                ) from exc
            raise _from_aws_error(exc, "create_handoff", queue_id=item["queueId"]) from exc
        except BotoCoreError as exc:
            raise _from_aws_error(exc, "create_handoff", queue_id=item["queueId"]) from exc
        self._refresh_cache(item)
        return item

    def update_handoff(
        self,
        queue_id: str,
        updates: Dict[str, Any],
        *,
        remove: Sequence[str] = (),
        expected_status: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Attribute-level update returning the merged record.

        With ``expected_status`` the write only succeeds while the stored
        status is one of those values; otherwise a CONFLICT is raised and
        the cached copy is replaced by the stored one. A missing record is
        NOT_FOUND.
        """
        fields = dict(updates)
        fields.setdefault("updatedAt", _now_z())
        expression, names, values = _build_update(fields, remove)
        condition = "attribute_exists(queueId)"
        if expected_status:
            names["#cs"] = "status"
            condition += " AND " + _in_clause("#cs", list(expected_status), "cs", values)
        try:
            resp = self.ddb.update_item(
                TableName=self.table,
                Key=self._key(queue_id),
                UpdateExpression=expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as exc:
            if _client_error_code(exc) != "ConditionalCheckFailedException":
                raise _from_aws_error(exc, "update_handoff", queue_id=queue_id) from exc
            raw_old = exc.response.get("Item")
            if not raw_old:
                self.cache.invalidate_queue_item(queue_id)
                raise HandoffError(
                    ErrorKind.NOT_FOUND, f"Handoff '{queue_id}' not found", queue_id=queue_id
                ) from exc
            current = _deserialize(raw_old)
            self._refresh_cache(current)
            raise HandoffError(
                ErrorKind.CONFLICT,
                f"Handoff '{queue_id}' is {current.get('status')}, expected one of {list(expected_status or [])}",
                code="HANDOFF_INVALID_STATUS",
                queue_id=queue_id,
                current_status=current.get("status"),
            ) from exc
        except BotoCoreError as exc:
            raise _from_aws_error(exc, "update_handoff", queue_id=queue_id) from exc

        merged = _deserialize(resp.get("Attributes") or {})
        self._refresh_cache(merged)
        return merged

    def delete_handoff(self, queue_id: str) -> None:
        try:
            self.ddb.delete_item(TableName=self.table, Key=self._key(queue_id))
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "delete_handoff", queue_id=queue_id) from exc
        self.cache.invalidate_queue_item(queue_id)

    # ----- list queries (never cached) -----

    def _paginate(self, operation: str, **kwargs: Any) -> List[Dict[str, Any]]:
        call = getattr(self.ddb, operation)
        items: List[Dict[str, Any]] = []
        limit = kwargs.pop("max_items", None)
        while True:
            try:
                resp = call(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise _from_aws_error(exc, operation) from exc
            items.extend(_deserialize(raw) for raw in resp.get("Items") or [])
            if limit is not None and len(items) >= limit:
                return items[:limit]
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def get_handoffs_by_status(self, status: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._paginate(
            "query",
            TableName=self.table,
            IndexName=self.status_index,
            KeyConditionExpression="#status = :status",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={":status": _serialize(status)},
            max_items=limit,
        )

    def count_by_status(self, status: str) -> int:
        kwargs: Dict[str, Any] = {
            "TableName": self.table,
            "IndexName": self.status_index,
            "KeyConditionExpression": "#status = :status",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":status": _serialize(status)},
            "Select": "COUNT",
        }
        total = 0
        while True:
            try:
                resp = self.ddb.query(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise _from_aws_error(exc, "count_by_status") from exc
            total += int(resp.get("Count") or 0)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return total
            kwargs["ExclusiveStartKey"] = last_key

    def get_handoffs_by_advisor(
        self, advisor_id: str, statuses: Sequence[str] = ("assigned", "active")
    ) -> List[Dict[str, Any]]:
        values: Dict[str, Any] = {":advisor": _serialize(advisor_id)}
        names = {"#advisor": "advisorId", "#status": "status"}
        kwargs: Dict[str, Any] = {
            "TableName": self.table,
            "IndexName": self.advisor_index,
            "KeyConditionExpression": "#advisor = :advisor",
            "ExpressionAttributeNames": names,
        }
        if statuses:
            kwargs["FilterExpression"] = _in_clause("#status", list(statuses), "st", values)
        else:
            names.pop("#status")
        kwargs["ExpressionAttributeValues"] = values
        return self._paginate("query", **kwargs)

    def get_handoffs_by_filters(
        self,
        *,
        statuses: Optional[Sequence[str]] = None,
        priorities: Optional[Sequence[str]] = None,
        advisor_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        if statuses:
            names["#status"] = "status"
            clauses.append(_in_clause("#status", list(statuses), "st", values))
        if priorities:
            names["#priority"] = "priority"
            clauses.append(_in_clause("#priority", list(priorities), "pr", values))
        if advisor_id:
            names["#advisor"] = "advisorId"
            values[":advisor"] = _serialize(advisor_id)
            clauses.append("#advisor = :advisor")
        if user_id:
            names["#user"] = "userId"
            values[":user"] = _serialize(user_id)
            clauses.append("#user = :user")
        kwargs: Dict[str, Any] = {"TableName": self.table, "max_items": limit}
        if clauses:
            kwargs["FilterExpression"] = " AND ".join(clauses)
            kwargs["ExpressionAttributeNames"] = names
            kwargs["ExpressionAttributeValues"] = values
        return self._paginate("scan", **kwargs)

    # ----- cleanup -----

    def cleanup_expired_handoffs(self, now: Optional[int] = None) -> int:
        """Delete records whose ``ttl`` has passed ahead of DynamoDB's own TTL purge."""
        current = _unix_now() if now is None else now
        expired = self._paginate(
            "scan",
            TableName=self.table,
            FilterExpression="#ttl < :now",
            ExpressionAttributeNames={"#ttl": "ttl"},
            ExpressionAttributeValues={":now": _serialize(current)},
            ProjectionExpression="queueId",
        )
        removed = 0
        for item in expired:
            queue_id = item.get("queueId")
            if not queue_id:
                continue
            try:
                self.delete_handoff(queue_id)
                removed += 1
            except HandoffError as exc:
                logger.warning("expired handoff %s not deleted: %s", queue_id, exc)
        if removed:
            logger.info("removed %d expired handoffs", removed)
        return removed
