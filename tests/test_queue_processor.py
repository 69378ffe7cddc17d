"""Tests for the work queue, the processor and chat delivery."""
import io
import json
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from fakes import DLQ_URL, QUEUE_URL, make_context
from handoff_relay.errors import ErrorKind, HandoffError
from handoff_relay.models import QueueMessage


def _transient():
    return HandoffError(ErrorKind.TRANSIENT_INFRA, "chat API returned http_503")


class ScriptedDelivery:
    """Fails the first ``failures`` calls for each message id, then succeeds."""

    def __init__(self, failures=0, always_fail=()):
        self.failures = failures
        self.always_fail = set(always_fail)
        self.calls = {}

    def __call__(self, message):
        count = self.calls.get(message.id, 0) + 1
        self.calls[message.id] = count
        if message.id in self.always_fail or count <= self.failures:
            raise _transient()
        return {"delivered": 1}


class QueueProcessorTests(unittest.TestCase):
    def setUp(self):
        self.ctx, self.fakes = make_context()
        self.sqs = self.fakes["sqs"]
        self.processor = self.ctx.processor

    def _enqueue(self, message_id="m1", user_id="u1", **payload):
        message = QueueMessage(id=message_id, type="message", payload=payload or {"text": "hello"}, user_id=user_id)
        self.processor.enqueue_message(message)
        return message

    def _dlq_bodies(self):
        return [json.loads(m["Body"]) for m in self.sqs.sent[DLQ_URL]]

    def test_message_succeeds_on_third_attempt(self):
        self._enqueue()
        delivery = ScriptedDelivery(failures=2)
        self.processor.deliver = delivery

        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.acknowledged, 1)
        self.assertEqual(report.dead_lettered, 0)
        self.assertEqual(delivery.calls["m1"], 3)
        self.assertEqual(self.fakes["sleep"].delays, [1.0, 2.0])
        self.assertEqual(self.sqs.sent[DLQ_URL], [])
        self.assertEqual(self.sqs.queues[QUEUE_URL], [])

    def test_exhausted_message_is_dead_lettered_once(self):
        self._enqueue(text="hello")
        self.processor.deliver = ScriptedDelivery(always_fail={"m1"})

        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.dead_lettered, 1)
        bodies = self._dlq_bodies()
        self.assertEqual(len(bodies), 1)
        self.assertEqual(bodies[0]["id"], "m1")
        self.assertEqual(bodies[0]["payload"], {"text": "hello"})
        self.assertEqual(bodies[0]["error"]["retryCount"], 3)
        self.assertEqual(bodies[0]["error"]["type"], "HandoffError")
        self.assertIn("503", bodies[0]["error"]["message"])
        self.assertEqual(self.sqs.queues[QUEUE_URL], [])
        self.assertEqual(self.ctx.metrics.counters["MessagesMovedToDLQ"], 1)

    def test_batch_continues_past_failed_message(self):
        self._enqueue("m1", "u1")
        self._enqueue("m2", "u2")
        delivery = ScriptedDelivery(always_fail={"m1"})
        self.processor.deliver = delivery

        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.processed, 2)
        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(report.acknowledged, 1)
        self.assertEqual(delivery.calls["m2"], 1)

    def test_dead_letter_write_failure_leaves_message_for_redelivery(self):
        self._enqueue()
        self.processor.deliver = ScriptedDelivery(always_fail={"m1"})
        self.sqs.fail_with[(DLQ_URL, "send_message")] = ClientError(
            {"Error": {"Code": "ServiceUnavailable", "Message": "down"}}, "SendMessage"
        )

        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.dead_lettered, 0)
        self.assertEqual(len(report.failed), 1)
        self.assertEqual(len(report.batch_item_failures()), 1)
        self.assertEqual(len(self.sqs.queues[QUEUE_URL]), 1)
        self.assertEqual(self.sqs.deleted, [])

    def test_non_retryable_error_goes_straight_to_dead_letter(self):
        self._enqueue()
        calls = []

        def _reject(message):
            calls.append(message.id)
            raise HandoffError(ErrorKind.VALIDATION, "chat API returned http_400", code="CHAT_REJECTED")

        self.processor.deliver = _reject
        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(calls, ["m1"])
        self.assertEqual(self.fakes["sleep"].delays, [])
        error = self._dlq_bodies()[0]["error"]
        self.assertEqual(error["code"], "CHAT_REJECTED")
        self.assertEqual(error["retryCount"], 1)

    def test_process_records_from_lambda_event(self):
        good = QueueMessage(id="m1", type="system", payload={"text": "maintenance"}, user_id="u1")
        records = [
            {"messageId": "sqs-1", "receiptHandle": "rh-1", "body": json.dumps(good.to_body()),
             "attributes": {"ApproximateReceiveCount": "1"}},
            {"messageId": "sqs-2", "receiptHandle": "rh-2", "body": "{not json",
             "attributes": {"ApproximateReceiveCount": "1"}},
        ]
        self.processor.deliver = ScriptedDelivery()

        report = self.processor.process_records(records)

        self.assertEqual(report.processed, 2)
        self.assertEqual(report.acknowledged, 1)
        self.assertEqual(report.dead_lettered, 1)
        self.assertEqual(report.batch_item_failures(), [])
        self.assertEqual(sorted(self.sqs.deleted), ["rh-1", "rh-2"])
        malformed = self._dlq_bodies()[0]
        self.assertEqual(malformed["raw"], "{not json")
        self.assertEqual(malformed["error"]["type"], "MalformedMessage")

    def test_non_object_bodies_are_dead_lettered_without_failing_the_batch(self):
        good = QueueMessage(id="m1", type="system", payload={"text": "maintenance"}, user_id="u1")
        bodies = ["[1, 2]", "null", '"x"', '{"id": "m9", "metadata": "x"}', json.dumps(good.to_body())]
        records = [
            {"messageId": f"sqs-{i}", "receiptHandle": f"rh-{i}", "body": body,
             "attributes": {"ApproximateReceiveCount": "1"}}
            for i, body in enumerate(bodies)
        ]
        self.processor.deliver = ScriptedDelivery()

        report = self.processor.process_records(records)

        self.assertEqual(report.acknowledged, 1)
        self.assertEqual(report.dead_lettered, 4)
        self.assertEqual(report.batch_item_failures(), [])
        self.assertEqual(sorted(self.sqs.deleted), [f"rh-{i}" for i in range(5)])
        self.assertEqual(sorted(b["raw"] for b in self._dlq_bodies()), sorted(bodies[:4]))

    def test_dequeue_skips_non_object_body(self):
        self.sqs.send_message(QueueUrl=QUEUE_URL, MessageBody="[1, 2]", MessageDeduplicationId="bad")
        self._enqueue()
        self.processor.deliver = ScriptedDelivery()

        report = self.processor.process_queue_batch(wait_seconds=0)

        self.assertEqual(report.acknowledged, 1)
        self.assertEqual(self._dlq_bodies()[0]["raw"], "[1, 2]")
        self.assertEqual(self.sqs.queues[QUEUE_URL], [])

    def test_report_dict(self):
        self.processor.deliver = ScriptedDelivery()
        self._enqueue()
        report = self.processor.process_queue_batch(wait_seconds=0)
        self.assertEqual(report.to_dict(), {"processed": 1, "acknowledged": 1, "dead_lettered": 0, "failed": []})


class WorkQueueTests(unittest.TestCase):
    def setUp(self):
        self.ctx, self.fakes = make_context()
        self.sqs = self.fakes["sqs"]
        self.queue = self.ctx.work_queue

    def test_enqueue_uses_user_group_and_collapses_duplicates(self):
        message = QueueMessage(id="m1", type="message", payload={"text": "hi"}, user_id="u1", priority="high")
        self.queue.enqueue(message)
        self.queue.enqueue(message)

        sent = self.sqs.sent[QUEUE_URL]
        self.assertEqual(len(sent), 1)
        self.assertEqual(sent[0]["MessageGroupId"], "u1")
        self.assertEqual(sent[0]["MessageDeduplicationId"], message.dedupe_key())
        self.assertEqual(sent[0]["MessageAttributes"]["Priority"]["StringValue"], "high")
        body = json.loads(sent[0]["Body"])
        self.assertEqual(body["metadata"]["userId"], "u1")
        self.assertEqual(body["metadata"]["retryCount"], 0)

    def test_requeue_increments_retry_count(self):
        message = QueueMessage(id="m1", type="message", payload={}, user_id="u1")
        self.queue.enqueue(message)
        retried = self.queue.requeue(message, RuntimeError("socket reset"))

        self.assertEqual(retried.retry_count, 1)
        sent = self.sqs.sent[QUEUE_URL]
        self.assertEqual(len(sent), 2)
        meta = json.loads(sent[1]["Body"])["metadata"]
        self.assertEqual(meta["retryCount"], 1)
        self.assertEqual(meta["lastError"], "socket reset")
        self.assertNotEqual(sent[0]["MessageDeduplicationId"], sent[1]["MessageDeduplicationId"])

    def test_redelivery_counts_as_retry(self):
        body = json.dumps(QueueMessage(id="m1", type="message", payload={}, user_id="u1").to_body())
        received = self.queue.decode(body, "rh-1", "sqs-1", {"ApproximateReceiveCount": "3"})
        self.assertEqual(received.message.retry_count, 2)
        self.assertEqual(received.receive_count, 3)

    def test_message_without_user_is_malformed(self):
        body = json.dumps({"id": "m1", "type": "message", "payload": {}, "metadata": {}})
        self.assertIsNone(self.queue.decode(body, "rh-1", "sqs-1"))
        self.assertEqual(self.sqs.deleted, ["rh-1"])
        self.assertEqual(len(self.sqs.sent[DLQ_URL]), 1)

    def test_depth(self):
        for i in range(3):
            self.queue.enqueue(QueueMessage(id=f"m{i}", type="message", payload={}, user_id="u1"))
        self.assertEqual(self.queue.get_depth(), {"visible": 3, "in_flight": 0, "depth": 3})

    def test_missing_queue_url_is_transient(self):
        ctx, _ = make_context(message_queue_url="")
        with self.assertRaises(HandoffError) as info:
            ctx.work_queue.enqueue(QueueMessage(id="m1", type="message", payload={}, user_id="u1"))
        self.assertEqual(info.exception.kind, ErrorKind.TRANSIENT_INFRA)


def _http_error(code, body=b""):
    return urllib.error.HTTPError("https://chat.example.com/v1/messages", code, "error", None, io.BytesIO(body))


class ChatDeliveryTests(unittest.TestCase):
    def setUp(self):
        self.ctx, self.fakes = make_context(chat_api_key="secret")
        self.ctx.registry.register("c1", "u1")
        self.delivery = self.ctx.processor.deliver
        self.message = QueueMessage(id="m1", type="message", payload={"text": "hola"}, user_id="u1")

    @patch("urllib.request.urlopen")
    def test_replies_are_pushed_to_user(self, mock_urlopen):
        response = MagicMock()
        response.read.return_value = json.dumps({"responses": [{"text": "Hi there"}, "ignored"]}).encode("utf-8")
        mock_urlopen.return_value.__enter__.return_value = response

        result = self.delivery(self.message)

        self.assertEqual(result, {"replies": 1, "delivered": 1})
        request = mock_urlopen.call_args[0][0]
        self.assertEqual(request.full_url, "https://chat.example.com/v1/messages")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("X-api-key"), "secret")
        self.assertEqual(json.loads(request.data)["payload"], {"text": "hola"})
        pushed = json.loads(self.fakes["apigw"].delivered_to("c1")[0])
        self.assertEqual(pushed["type"], "MESSAGE")
        self.assertEqual(pushed["payload"], {"text": "Hi there"})

    @patch("urllib.request.urlopen")
    def test_server_error_is_transient(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(503, b"busy")
        with self.assertRaises(HandoffError) as info:
            self.delivery(self.message)
        self.assertEqual(info.exception.kind, ErrorKind.TRANSIENT_INFRA)
        self.assertTrue(info.exception.retryable)

    @patch("urllib.request.urlopen")
    def test_client_error_is_not_retryable(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(400, b"bad message")
        with self.assertRaises(HandoffError) as info:
            self.delivery(self.message)
        self.assertEqual(info.exception.kind, ErrorKind.VALIDATION)
        self.assertEqual(info.exception.code, "CHAT_REJECTED")
        self.assertIn("bad message", info.exception.message)

    @patch("urllib.request.urlopen")
    def test_unreachable_is_transient(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("connection refused")
        with self.assertRaises(HandoffError) as info:
            self.delivery(self.message)
        self.assertEqual(info.exception.kind, ErrorKind.TRANSIENT_INFRA)

    def test_system_message_pushed_directly(self):
        system = QueueMessage(id="m2", type="system", payload={"text": "maintenance"}, user_id="u1")
        self.assertEqual(self.delivery(system), {"replies": 0, "delivered": 1})
        pushed = json.loads(self.fakes["apigw"].delivered_to("c1")[0])
        self.assertEqual(pushed["payload"], {"text": "maintenance"})

    def test_handoff_message_fails_when_every_connection_fails(self):
        self.fakes["apigw"].broken.add("c1")
        handoff = QueueMessage(id="m3", type="handoff", payload={"status": "assigned"}, user_id="u1")
        with self.assertRaises(HandoffError) as info:
            self.delivery(handoff)
        self.assertEqual(info.exception.kind, ErrorKind.TRANSIENT_INFRA)

    def test_handoff_message_without_connections_is_delivered_to_nobody(self):
        handoff = QueueMessage(id="m4", type="handoff", payload={}, user_id="offline-user")
        self.assertEqual(self.delivery(handoff), {"replies": 0, "delivered": 0})


if __name__ == "__main__":
    unittest.main()
