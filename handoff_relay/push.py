"""push.py — WebSocket push fan-out through the API Gateway Management API.

There is no native broadcast: every notification is posted connection by
connection, in parallel, and each post is isolated. A ``GoneException``
removes the connection from the registry and is never surfaced to the
caller.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from handoff_relay.connections import ConnectionRegistry
from handoff_relay.errors import ErrorKind, HandoffError, _from_aws_error
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import Connection, DeliveryReport, PushMessage

logger = logging.getLogger("handoff_relay")

__all__ = ["PushNotifier"]


class PushNotifier:
    def __init__(
        self,
        apigw: Any,
        registry: ConnectionRegistry,
        metrics: HandoffMetrics,
        *,
        max_workers: int = 8,
    ):
        self.apigw = apigw
        self.registry = registry
        self.metrics = metrics
        self.max_workers = max(1, max_workers)

    def post_to_connection(self, connection_id: str, message: PushMessage) -> None:
        """Post one message. Raises STALE_CONNECTION for a gone channel, TRANSIENT_INFRA otherwise."""
        if self.apigw is None:
            raise HandoffError(ErrorKind.TRANSIENT_INFRA, "push channel not configured", connection_id=connection_id)
        try:
            self.apigw.post_to_connection(ConnectionId=connection_id, Data=message.to_bytes())
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "post_to_connection", connection_id=connection_id) from exc

    def send_to_connection(self, connection_id: str, message: PushMessage) -> bool:
        """Post and self-heal: a gone connection is removed from the registry.

        Returns True when delivered. Raises only for non-stale failures.
        """
        try:
            self.post_to_connection(connection_id, message)
        except HandoffError as exc:
            if exc.kind is not ErrorKind.STALE_CONNECTION:
                raise
            logger.info("connection %s is gone; removing", connection_id)
            self.metrics.increment("StaleConnectionsRemoved")
            try:
                self.registry.remove(connection_id)
            except HandoffError as remove_exc:
                logger.warning("stale connection %s not removed: %s", connection_id, remove_exc)
            return False
        self.metrics.increment("WebSocketMessagesSent", message_type=message.type)
        return True

    def _fan_out(self, connections: List[Connection], message: PushMessage) -> DeliveryReport:
        report = DeliveryReport(attempted=len(connections))
        if not connections:
            return report
        workers = min(len(connections), self.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.send_to_connection, conn.connection_id, message): conn.connection_id
                for conn in connections
            }
            for future in as_completed(futures):
                connection_id = futures[future]
                try:
                    if future.result():
                        report.delivered += 1
                    else:
                        report.stale.append(connection_id)
                except Exception as exc:
                    logger.warning("push to %s failed: %s", connection_id, exc)
                    report.failed.append((connection_id, str(exc)))
        if report.failed:
            self.metrics.increment("WebSocketSendFailures", len(report.failed))
        return report

    def send_to_user(self, user_id: str, message: PushMessage) -> DeliveryReport:
        """Deliver to every live connection of ``user_id``.

        Per-connection failures are collected in the report. No live
        connection is logged as a no-recipient condition.
        """
        connections = self.registry.connections_for_user(user_id)
        if not connections:
            logger.info("no live connections for user %s; %s not delivered", user_id, message.type)
            self.metrics.increment("NoRecipient", message_type=message.type)
            return DeliveryReport()
        return self._fan_out(connections, message)

    def broadcast_message(
        self,
        message: PushMessage,
        user_ids: Optional[Iterable[str]] = None,
        *,
        role: Optional[str] = None,
    ) -> DeliveryReport:
        """Send to the given users, or to every active connection (optionally one role)."""
        if user_ids is not None:
            report = DeliveryReport()
            for user_id in dict.fromkeys(user_ids):
                try:
                    report.merge(self.send_to_user(user_id, message))
                except HandoffError as exc:
                    logger.warning("broadcast to user %s failed: %s", user_id, exc)
                    report.failed.append((user_id, str(exc)))
            return report
        connections = self.registry.active_connections(role=role)
        if not connections:
            logger.info("no active connections for broadcast of %s", message.type)
            return DeliveryReport()
        return self._fan_out(connections, message)
