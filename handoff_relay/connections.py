"""connections.py — WebSocket connection registry (DynamoDB).

Records are keyed by ``connectionId`` with a ``UserIdIndex`` for per-user
fan-out. Each write touches a single connection, so concurrent writers
never contend on a record they do not own.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from handoff_relay.config import HandoffSettings
from handoff_relay.errors import HandoffError, _from_aws_error
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import CONNECTION_STATUSES, Connection
from handoff_relay.serialization import _deserialize, _serialize, _serialize_item, _unix_now

logger = logging.getLogger("handoff_relay")

__all__ = ["ConnectionRegistry"]


class ConnectionRegistry:
    def __init__(self, ddb: Any, metrics: HandoffMetrics, settings: HandoffSettings):
        self.ddb = ddb
        self.metrics = metrics
        self.table = settings.connections_table
        self.user_index = settings.connections_user_index
        self.ttl_seconds = settings.connection_ttl_seconds
        self.stale_minutes = settings.stale_connection_minutes
        self.scan_limit = settings.broadcast_scan_limit

    @staticmethod
    def _key(connection_id: str) -> Dict[str, Any]:
        return {"connectionId": _serialize(connection_id)}

    def register(
        self,
        connection_id: str,
        user_id: str,
        *,
        platform: str = "web",
        role: str = "user",
    ) -> Connection:
        now = _unix_now()
        connection = Connection(
            connection_id=connection_id,
            user_id=user_id,
            status="CONNECTED",
            connected_at=now,
            last_activity=now,
            ttl=now + self.ttl_seconds,
            platform=platform,
            role=role,
        )
        try:
            self.ddb.put_item(TableName=self.table, Item=_serialize_item(connection.to_item()))
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "register_connection", connection_id=connection_id) from exc
        logger.info("connection %s registered for user %s (%s)", connection_id, user_id, role)
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        try:
            resp = self.ddb.get_item(TableName=self.table, Key=self._key(connection_id))
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "get_connection", connection_id=connection_id) from exc
        raw = resp.get("Item")
        return Connection.from_item(_deserialize(raw)) if raw else None

    def _update(self, connection_id: str, expression: str, names: Dict[str, str], values: Dict[str, Any]) -> bool:
        """Update an existing connection. Returns False if it is already gone."""
        try:
            self.ddb.update_item(
                TableName=self.table,
                Key=self._key(connection_id),
                UpdateExpression=expression,
                ConditionExpression="attribute_exists(connectionId)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise _from_aws_error(exc, "update_connection", connection_id=connection_id) from exc
        except BotoCoreError as exc:
            raise _from_aws_error(exc, "update_connection", connection_id=connection_id) from exc
        return True

    def touch(self, connection_id: str) -> bool:
        now = _unix_now()
        return self._update(
            connection_id,
            "SET #la = :now, #ttl = :ttl",
            {"#la": "lastActivity", "#ttl": "ttl"},
            {":now": _serialize(now), ":ttl": _serialize(now + self.ttl_seconds)},
        )

    def update_status(
        self,
        connection_id: str,
        status: str,
        *,
        in_handoff: Optional[bool] = None,
        handoff_id: Optional[str] = None,
    ) -> bool:
        if status not in CONNECTION_STATUSES:
            raise ValueError(f"Unknown connection status '{status}'")
        now = _unix_now()
        names = {"#status": "status", "#la": "lastActivity"}
        values: Dict[str, Any] = {":status": _serialize(status), ":now": _serialize(now)}
        parts = ["#status = :status", "#la = :now"]
        if in_handoff is not None:
            names["#meta"] = "metadata"
            names["#ih"] = "inHandoff"
            values[":ih"] = _serialize(in_handoff)
            parts.append("#meta.#ih = :ih")
        if handoff_id is not None:
            names["#meta"] = "metadata"
            names["#hid"] = "handoffId"
            values[":hid"] = _serialize(handoff_id)
            parts.append("#meta.#hid = :hid")
        return self._update(connection_id, "SET " + ", ".join(parts), names, values)

    def remove(self, connection_id: str) -> None:
        try:
            self.ddb.delete_item(TableName=self.table, Key=self._key(connection_id))
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "remove_connection", connection_id=connection_id) from exc
        logger.info("connection %s removed", connection_id)

    def handle_disconnection(self, connection_id: str) -> Optional[Connection]:
        """Drop a connection on ``$disconnect``. Returns the removed record, if any."""
        existing = self.get(connection_id)
        self.remove(connection_id)
        return existing

    # ----- lookups -----

    def connections_for_user(self, user_id: str) -> List[Connection]:
        """Live connections owned by ``user_id`` (DISCONNECTED and expired records excluded)."""
        kwargs: Dict[str, Any] = {
            "TableName": self.table,
            "IndexName": self.user_index,
            "KeyConditionExpression": "#user = :user",
            "ExpressionAttributeNames": {"#user": "userId"},
            "ExpressionAttributeValues": {":user": _serialize(user_id)},
        }
        now = _unix_now()
        out: List[Connection] = []
        while True:
            try:
                resp = self.ddb.query(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise _from_aws_error(exc, "connections_for_user", user_id=user_id) from exc
            for raw in resp.get("Items") or []:
                conn = Connection.from_item(_deserialize(raw))
                if conn.status != "DISCONNECTED" and (not conn.ttl or conn.ttl > now):
                    out.append(conn)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return out
            kwargs["ExclusiveStartKey"] = last_key

    def _scan(self, filter_expression: str, names: Dict[str, str], values: Dict[str, Any], limit: int) -> List[Connection]:
        kwargs: Dict[str, Any] = {
            "TableName": self.table,
            "FilterExpression": filter_expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        out: List[Connection] = []
        while len(out) < limit:
            try:
                resp = self.ddb.scan(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise _from_aws_error(exc, "scan_connections") from exc
            out.extend(Connection.from_item(_deserialize(raw)) for raw in resp.get("Items") or [])
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return out[:limit]

    def active_connections(self, role: Optional[str] = None) -> List[Connection]:
        """Bounded scan of every live connection, optionally restricted to a role."""
        names = {"#status": "status"}
        values: Dict[str, Any] = {":disconnected": _serialize("DISCONNECTED")}
        expression = "#status <> :disconnected"
        if role:
            names["#meta"] = "metadata"
            names["#role"] = "role"
            values[":role"] = _serialize(role)
            expression += " AND #meta.#role = :role"
        found = self._scan(expression, names, values, self.scan_limit)
        if len(found) >= self.scan_limit:
            logger.warning("active connection scan truncated at %d records", self.scan_limit)
        return found

    def cleanup_stale_connections(self, max_age_minutes: Optional[int] = None) -> int:
        minutes = self.stale_minutes if max_age_minutes is None else max_age_minutes
        cutoff = _unix_now() - minutes * 60
        stale = self._scan(
            "#la < :cutoff",
            {"#la": "lastActivity"},
            {":cutoff": _serialize(cutoff)},
            self.scan_limit,
        )
        removed = 0
        for conn in stale:
            try:
                self.remove(conn.connection_id)
                removed += 1
            except HandoffError as exc:
                logger.warning("stale connection %s not removed: %s", conn.connection_id, exc)
        if removed:
            self.metrics.increment("StaleConnectionsRemoved", removed)
            logger.info("removed %d stale connections", removed)
        return removed
