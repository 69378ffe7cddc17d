"""work_queue.py — SQS FIFO work queue with a dead-letter queue.

Messages for one user share a ``MessageGroupId`` so they are delivered in
order relative to each other. The deduplication id is derived from the
message id and retry count: repeated sends of the same attempt collapse
inside SQS's deduplication window, a requeue does not.
"""
from __future__ import annotations

import hashlib
import json
import logging
import traceback
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from handoff_relay.config import HandoffSettings
from handoff_relay.errors import ErrorKind, HandoffError, _from_aws_error
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import QueueMessage, ReceivedMessage
from handoff_relay.serialization import _json_default, _now_z

logger = logging.getLogger("handoff_relay")

__all__ = ["WorkQueueClient", "_message_attributes"]


def _message_attributes(message: QueueMessage) -> Dict[str, Any]:
    return {
        "MessageType": {"DataType": "String", "StringValue": message.type},
        "Priority": {"DataType": "String", "StringValue": message.priority},
    }


class WorkQueueClient:
    def __init__(self, sqs: Any, metrics: HandoffMetrics, settings: HandoffSettings):
        self.sqs = sqs
        self.metrics = metrics
        self.queue_url = settings.message_queue_url
        self.dead_letter_url = settings.dead_letter_queue_url
        self.long_poll_seconds = settings.long_poll_seconds
        self.max_batch = settings.max_batch

    def _require_url(self, url: str, name: str) -> str:
        if not url:
            raise HandoffError(ErrorKind.TRANSIENT_INFRA, f"{name} not configured")
        return url

    def enqueue(self, message: QueueMessage) -> str:
        """Send ``message`` with its per-user group key. Returns the SQS message id."""
        url = self._require_url(self.queue_url, "MESSAGE_QUEUE_URL")
        try:
            resp = self.sqs.send_message(
                QueueUrl=url,
                MessageBody=json.dumps(message.to_body(), default=_json_default),
                MessageGroupId=message.user_id,
                MessageDeduplicationId=message.dedupe_key(),
                MessageAttributes=_message_attributes(message),
            )
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "enqueue", message_id=message.id) from exc
        self.metrics.increment("EnqueuedMessages", message_type=message.type)
        logger.info("enqueued %s message %s for user %s", message.type, message.id, message.user_id)
        return str(resp.get("MessageId") or "")

    def dequeue(self, max_batch: Optional[int] = None, wait_seconds: Optional[int] = None) -> List[ReceivedMessage]:
        """Long-poll a batch. Undecodable bodies are dead-lettered and acknowledged."""
        url = self._require_url(self.queue_url, "MESSAGE_QUEUE_URL")
        try:
            resp = self.sqs.receive_message(
                QueueUrl=url,
                MaxNumberOfMessages=max(1, min(max_batch or self.max_batch, 10)),
                WaitTimeSeconds=self.long_poll_seconds if wait_seconds is None else wait_seconds,
                AttributeNames=["ApproximateReceiveCount"],
                MessageAttributeNames=["All"],
            )
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "dequeue") from exc

        received: List[ReceivedMessage] = []
        for raw in resp.get("Messages") or []:
            item = self.decode(raw.get("Body"), raw.get("ReceiptHandle"), raw.get("MessageId"), raw.get("Attributes"))
            if item is not None:
                received.append(item)
        return received

    def decode(
        self,
        body: Any,
        receipt_handle: Optional[str],
        message_id: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReceivedMessage]:
        """Parse one raw SQS body into a ``ReceivedMessage``.

        A body that cannot be parsed is moved to the dead-letter queue as-is
        and acknowledged; None is returned.
        """
        receive_count = int((attributes or {}).get("ApproximateReceiveCount") or 1)
        try:
            message = QueueMessage.from_body(json.loads(body))
        except (AttributeError, TypeError, ValueError, KeyError) as exc:
            logger.warning("malformed queue message %s: %s", message_id, exc)
            self._dead_letter_raw(body, str(exc), message_id)
            if receipt_handle:
                self.acknowledge(receipt_handle)
            return None
        # Redelivery by SQS counts as a retry.
        message.retry_count = max(message.retry_count, receive_count - 1)
        return ReceivedMessage(
            message=message,
            receipt_handle=str(receipt_handle or ""),
            message_id=str(message_id or ""),
            receive_count=receive_count,
        )

    def acknowledge(self, receipt_handle: str) -> None:
        if not receipt_handle:
            return
        url = self._require_url(self.queue_url, "MESSAGE_QUEUE_URL")
        try:
            self.sqs.delete_message(QueueUrl=url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "acknowledge") from exc

    def move_to_dead_letter(self, message: QueueMessage, error: BaseException, attempts: int = 0) -> str:
        """Write ``message`` plus error metadata to the dead-letter queue."""
        url = self._require_url(self.dead_letter_url, "DEAD_LETTER_QUEUE_URL")
        retry_count = message.retry_count + attempts
        body = message.to_body()
        body["error"] = {
            "message": str(error),
            "type": type(error).__name__,
            "code": getattr(error, "code", None),
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:],
            "timestamp": _now_z(),
            "retryCount": retry_count,
        }
        dedupe = hashlib.sha256(f"{message.id}:dlq:{retry_count}".encode("utf-8")).hexdigest()
        try:
            resp = self.sqs.send_message(
                QueueUrl=url,
                MessageBody=json.dumps(body, default=_json_default),
                MessageGroupId=message.user_id,
                MessageDeduplicationId=dedupe,
                MessageAttributes=_message_attributes(message),
            )
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "move_to_dead_letter", message_id=message.id) from exc
        self.metrics.increment("MessagesMovedToDLQ", message_type=message.type)
        logger.warning("message %s moved to dead-letter queue after %d retries: %s", message.id, retry_count, error)
        return str(resp.get("MessageId") or "")

    def _dead_letter_raw(self, body: Any, reason: str, message_id: Optional[str]) -> None:
        url = self._require_url(self.dead_letter_url, "DEAD_LETTER_QUEUE_URL")
        raw_text = body if isinstance(body, str) else json.dumps(body, default=str)
        payload = {"raw": raw_text, "error": {"message": reason, "type": "MalformedMessage", "timestamp": _now_z()}}
        try:
            self.sqs.send_message(
                QueueUrl=url,
                MessageBody=json.dumps(payload),
                MessageGroupId="malformed",
                MessageDeduplicationId=hashlib.sha256(f"{message_id}:{raw_text}".encode("utf-8")).hexdigest(),
            )
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "move_to_dead_letter", message_id=message_id) from exc
        self.metrics.increment("MessagesMovedToDLQ", message_type="malformed")

    def requeue(self, message: QueueMessage, error: BaseException) -> QueueMessage:
        """Re-enqueue with retryCount + 1 and the failure recorded."""
        retried = QueueMessage(
            id=message.id,
            type=message.type,
            payload=message.payload,
            user_id=message.user_id,
            priority=message.priority,
            timestamp=message.timestamp,
            retry_count=message.retry_count + 1,
            last_error=str(error),
            last_attempt=_now_z(),
        )
        self.enqueue(retried)
        return retried

    def get_depth(self) -> Dict[str, int]:
        url = self._require_url(self.queue_url, "MESSAGE_QUEUE_URL")
        try:
            resp = self.sqs.get_queue_attributes(
                QueueUrl=url,
                AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
            )
        except (ClientError, BotoCoreError) as exc:
            raise _from_aws_error(exc, "get_depth") from exc
        attrs = resp.get("Attributes") or {}
        visible = int(attrs.get("ApproximateNumberOfMessages") or 0)
        in_flight = int(attrs.get("ApproximateNumberOfMessagesNotVisible") or 0)
        return {"visible": visible, "in_flight": in_flight, "depth": visible + in_flight}
