"""processor.py — Drains the work queue through the Retry Executor.

Each message is delivered inside ``with_retry``: success acknowledges it,
exhaustion writes exactly one dead-letter entry and then acknowledges it.
A single message's terminal failure never stops the batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from handoff_relay.errors import ErrorKind, HandoffError
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.models import QueueMessage, ReceivedMessage
from handoff_relay.retry import RetryableOperation, RetryConfig, RetryExecutor
from handoff_relay.work_queue import WorkQueueClient

logger = logging.getLogger("handoff_relay")

__all__ = ["BatchReport", "QueueProcessor"]

ACKNOWLEDGED = "acknowledged"
DEAD_LETTERED = "dead_lettered"
FAILED = "failed"


@dataclass
class BatchReport:
    processed: int = 0
    acknowledged: int = 0
    dead_lettered: int = 0
    failed: List[str] = field(default_factory=list)

    def record(self, outcome: str, message_id: str) -> None:
        self.processed += 1
        if outcome == ACKNOWLEDGED:
            self.acknowledged += 1
        elif outcome == DEAD_LETTERED:
            self.dead_lettered += 1
        else:
            self.failed.append(message_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "acknowledged": self.acknowledged,
            "dead_lettered": self.dead_lettered,
            "failed": list(self.failed),
        }

    def batch_item_failures(self) -> List[Dict[str, str]]:
        return [{"itemIdentifier": message_id} for message_id in self.failed]


class QueueProcessor:
    def __init__(
        self,
        work_queue: WorkQueueClient,
        deliver: Callable[[QueueMessage], Any],
        executor: RetryExecutor,
        metrics: HandoffMetrics,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.work_queue = work_queue
        self.deliver = deliver
        self.executor = executor
        self.metrics = metrics
        self.retry_config = retry_config

    def process_message(self, received: ReceivedMessage) -> str:
        message = received.message
        dead_lettered = []

        def _on_success(_result: Any) -> None:
            self.work_queue.acknowledge(received.receipt_handle)

        def _on_final_failure(error: BaseException, attempts: int) -> None:
            self.work_queue.move_to_dead_letter(message, error, attempts)
            dead_lettered.append(True)
            self.work_queue.acknowledge(received.receipt_handle)

        operation = RetryableOperation(
            execute=lambda: self.deliver(message),
            on_success=_on_success,
            on_final_failure=_on_final_failure,
            name=f"deliver {message.type} {message.id}",
        )
        try:
            self.executor.with_retry(operation, self.retry_config)
        except HandoffError as exc:
            if dead_lettered:
                return DEAD_LETTERED
            logger.error("message %s left on queue: %s", message.id, exc)
            return FAILED
        except Exception:
            if dead_lettered:
                return DEAD_LETTERED
            logger.exception("message %s left on queue after unexpected error", message.id)
            return FAILED
        self.metrics.increment("MessagesProcessed", message_type=message.type)
        return ACKNOWLEDGED

    def _process(self, batch: List[ReceivedMessage], report: BatchReport) -> BatchReport:
        for received in batch:
            outcome = self.process_message(received)
            report.record(outcome, received.message_id or received.message.id)
        if report.failed:
            self.metrics.increment("MessagesFailed", len(report.failed))
        logger.info(
            "queue batch processed=%d acknowledged=%d dead_lettered=%d failed=%d",
            report.processed,
            report.acknowledged,
            report.dead_lettered,
            len(report.failed),
        )
        return report

    def process_records(self, records: List[Dict[str, Any]]) -> BatchReport:
        """Process an SQS Lambda event batch."""
        report = BatchReport()
        batch: List[ReceivedMessage] = []
        for record in records:
            message_id = str(record.get("messageId") or "unknown")
            try:
                received = self.work_queue.decode(
                    record.get("body"),
                    record.get("receiptHandle"),
                    message_id,
                    record.get("attributes"),
                )
            except HandoffError as exc:
                logger.error("malformed message %s could not be dead-lettered: %s", message_id, exc)
                report.record(FAILED, message_id)
                continue
            if received is None:
                report.record(DEAD_LETTERED, message_id)
                continue
            batch.append(received)
        return self._process(batch, report)

    def process_queue_batch(self, max_batch: Optional[int] = None, wait_seconds: Optional[int] = None) -> BatchReport:
        """Poll the queue once and process what arrives."""
        batch = self.work_queue.dequeue(max_batch, wait_seconds)
        return self._process(batch, BatchReport())

    def enqueue_message(self, message: QueueMessage) -> str:
        try:
            return self.work_queue.enqueue(message)
        except HandoffError as exc:
            if exc.kind is ErrorKind.TRANSIENT_INFRA:
                self.metrics.increment("EnqueueFailures", message_type=message.type)
            raise
