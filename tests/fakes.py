"""In-memory stand-ins for DynamoDB, SQS, EventBridge, API Gateway and Redis.

The DynamoDB fake evaluates the subset of condition/filter/update
expressions the handoff code emits (AND-joined comparisons, IN, attribute
existence, SET/REMOVE with dotted paths).
"""
import fnmatch
import re
import threading
import uuid
from decimal import Decimal

import redis
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from handoff_relay.aws_clients import AwsClients
from handoff_relay.config import HandoffSettings
from handoff_relay.context import HandoffContext
from handoff_relay.retry import RetryExecutor

_DESER = TypeDeserializer()
_SER = TypeSerializer()

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/handoff-messages.fifo"
DLQ_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/handoff-messages-dlq.fifo"


def _client_error(code, operation, status=400, **extra):
    response = {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}
    response.update(extra)
    return ClientError(response, operation)


def _resolve_path(token, names):
    return [names.get(part, part) for part in token.strip().split(".")]


def _get_path(item, path):
    current = item
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(item, path, value):
    current = item
    for part in path[:-1]:
        current = current.setdefault(part, {})
    current[path[-1]] = value


def _remove_path(item, path):
    current = _get_path(item, path[:-1]) if len(path) > 1 else item
    if isinstance(current, dict):
        current.pop(path[-1], None)


def _evaluate(expression, item, names, values):
    if not expression:
        return True
    for clause in expression.split(" AND "):
        clause = clause.strip()
        match = re.fullmatch(r"attribute_(not_)?exists\((.+)\)", clause)
        if match:
            exists = _get_path(item, _resolve_path(match.group(2), names)) is not None
            if exists == bool(match.group(1)):
                return False
            continue
        match = re.fullmatch(r"(\S+) IN \((.+)\)", clause)
        if match:
            current = _get_path(item, _resolve_path(match.group(1), names))
            options = [values[p.strip()] for p in match.group(2).split(",")]
            if current not in options:
                return False
            continue
        match = re.fullmatch(r"(\S+) (=|<>|<|>) (:\w+)", clause)
        if not match:
            raise AssertionError(f"unsupported expression clause: {clause}")
        current = _get_path(item, _resolve_path(match.group(1), names))
        expected = values[match.group(3)]
        op = match.group(2)
        if op == "=" and current != expected:
            return False
        if op == "<>" and current == expected:
            return False
        if op in ("<", ">") and current is None:
            return False
        if op == "<" and not current < expected:
            return False
        if op == ">" and not current > expected:
            return False
    return True


class FakeDynamoDB:
    """Tables keyed by a single hash attribute, with GSIs keyed by one attribute."""

    def __init__(self, settings):
        self.lock = threading.Lock()
        self.key_attrs = {settings.queue_table: "queueId", settings.connections_table: "connectionId"}
        self.indexes = {
            settings.status_index: "status",
            settings.advisor_index: "advisorId",
            settings.connections_user_index: "userId",
        }
        self.tables = {name: {} for name in self.key_attrs}
        self.calls = []
        self.fail_with = {}

    # ----- helpers -----

    @staticmethod
    def _plain(raw):
        return {k: _DESER.deserialize(v) for k, v in raw.items()}

    @staticmethod
    def _wire(item):
        return {k: _SER.serialize(v) for k, v in item.items()}

    def _maybe_fail(self, op):
        self.calls.append(op)
        exc = self.fail_with.get(op)
        if exc is not None:
            raise exc

    def _key_of(self, table, key):
        return _DESER.deserialize(key[self.key_attrs[table]])

    def seed(self, table, item):
        """Insert a plain-Python item directly (numbers as Decimal)."""
        converted = {k: (Decimal(str(v)) if isinstance(v, (int, float)) and not isinstance(v, bool) else v)
                     for k, v in item.items()}
        self.tables[table][converted[self.key_attrs[table]]] = converted

    def item(self, table, key):
        stored = self.tables[table].get(key)
        return None if stored is None else {k: v for k, v in stored.items()}

    # ----- API surface -----

    def put_item(self, TableName, Item, ConditionExpression=None, ExpressionAttributeNames=None,  # noqa: N803
                 ExpressionAttributeValues=None):
        self._maybe_fail("put_item")
        item = self._plain(Item)
        key = item[self.key_attrs[TableName]]
        with self.lock:
            existing = self.tables[TableName].get(key, {})
            values = self._plain(ExpressionAttributeValues or {})
            if ConditionExpression and not _evaluate(
                ConditionExpression, existing, ExpressionAttributeNames or {}, values
            ):
                raise _client_error("ConditionalCheckFailedException", "PutItem")
            self.tables[TableName][key] = item
        return {}

    def get_item(self, TableName, Key, ConsistentRead=False):  # noqa: N803
        self._maybe_fail("get_item")
        with self.lock:
            stored = self.tables[TableName].get(self._key_of(TableName, Key))
            return {"Item": self._wire(stored)} if stored else {}

    def delete_item(self, TableName, Key):  # noqa: N803
        self._maybe_fail("delete_item")
        with self.lock:
            self.tables[TableName].pop(self._key_of(TableName, Key), None)
        return {}

    def update_item(self, TableName, Key, UpdateExpression, ConditionExpression=None,  # noqa: N803
                    ExpressionAttributeNames=None, ExpressionAttributeValues=None, ReturnValues="NONE",
                    ReturnValuesOnConditionCheckFailure="NONE"):
        self._maybe_fail("update_item")
        names = ExpressionAttributeNames or {}
        values = self._plain(ExpressionAttributeValues or {})
        key = self._key_of(TableName, Key)
        with self.lock:
            existing = self.tables[TableName].get(key)
            current = dict(existing) if existing else {}
            if ConditionExpression and not _evaluate(ConditionExpression, current, names, values):
                extra = {}
                if existing and ReturnValuesOnConditionCheckFailure == "ALL_OLD":
                    extra["Item"] = self._wire(existing)
                raise _client_error("ConditionalCheckFailedException", "UpdateItem", **extra)
            updated = {k: (dict(v) if isinstance(v, dict) else v) for k, v in current.items()}
            updated[self.key_attrs[TableName]] = key
            set_part, _, remove_part = UpdateExpression.partition(" REMOVE ")
            for assignment in set_part[len("SET "):].split(", "):
                path, _, placeholder = assignment.partition(" = ")
                _set_path(updated, _resolve_path(path, names), values[placeholder.strip()])
            for path in filter(None, (p.strip() for p in remove_part.split(","))):
                _remove_path(updated, _resolve_path(path, names))
            self.tables[TableName][key] = updated
        if ReturnValues == "ALL_NEW":
            return {"Attributes": self._wire(updated)}
        return {}

    def _select(self, TableName, FilterExpression=None, ExpressionAttributeNames=None,  # noqa: N803
                ExpressionAttributeValues=None, KeyConditionExpression=None, IndexName=None):
        names = ExpressionAttributeNames or {}
        values = self._plain(ExpressionAttributeValues or {})
        with self.lock:
            items = [dict(v) for v in self.tables[TableName].values()]
        if IndexName:
            index_attr = self.indexes[IndexName]
            items = [i for i in items if index_attr in i]
        if KeyConditionExpression:
            items = [i for i in items if _evaluate(KeyConditionExpression, i, names, values)]
        return [i for i in items if _evaluate(FilterExpression, i, names, values)]

    def query(self, TableName, IndexName=None, KeyConditionExpression=None, FilterExpression=None,  # noqa: N803
              ExpressionAttributeNames=None, ExpressionAttributeValues=None, Select=None,
              ExclusiveStartKey=None):
        self._maybe_fail("query")
        items = self._select(
            TableName, FilterExpression, ExpressionAttributeNames, ExpressionAttributeValues,
            KeyConditionExpression, IndexName,
        )
        if Select == "COUNT":
            return {"Count": len(items)}
        return {"Items": [self._wire(i) for i in items], "Count": len(items)}

    def scan(self, TableName, FilterExpression=None, ExpressionAttributeNames=None,  # noqa: N803
             ExpressionAttributeValues=None, ProjectionExpression=None, ExclusiveStartKey=None):
        self._maybe_fail("scan")
        items = self._select(TableName, FilterExpression, ExpressionAttributeNames, ExpressionAttributeValues)
        return {"Items": [self._wire(i) for i in items], "Count": len(items)}


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class FlakyWriteRedis(FakeRedis):
    """Fails the next ``fail_next`` setex calls whose key starts with ``prefix``."""

    def __init__(self, prefix="handoff:queue:"):
        super().__init__()
        self.prefix = prefix
        self.fail_next = 0

    def setex(self, key, ttl, value):
        if self.fail_next and key.startswith(self.prefix):
            self.fail_next -= 1
            raise redis.exceptions.TimeoutError("Timeout writing to socket")
        return super().setex(key, ttl, value)


class BrokenRedis:
    def _down(self, *_args, **_kwargs):
        raise redis.exceptions.ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    get = setex = delete = scan_iter = _down


class FakeSqs:
    def __init__(self):
        self.queues = {QUEUE_URL: [], DLQ_URL: []}
        self.sent = {QUEUE_URL: [], DLQ_URL: []}
        self.deleted = []
        self.dedupe = {}
        self.fail_with = {}

    def send_message(self, QueueUrl, MessageBody, MessageGroupId=None, MessageDeduplicationId=None,  # noqa: N803
                     MessageAttributes=None):
        exc = self.fail_with.get((QueueUrl, "send_message"))
        if exc is not None:
            raise exc
        seen = self.dedupe.setdefault(QueueUrl, {})
        if MessageDeduplicationId in seen:
            return {"MessageId": seen[MessageDeduplicationId]}
        message_id = str(uuid.uuid4())
        seen[MessageDeduplicationId] = message_id
        record = {
            "MessageId": message_id,
            "ReceiptHandle": f"rh-{message_id}",
            "Body": MessageBody,
            "MessageGroupId": MessageGroupId,
            "MessageDeduplicationId": MessageDeduplicationId,
            "MessageAttributes": MessageAttributes or {},
            "Attributes": {"ApproximateReceiveCount": "1"},
        }
        self.queues[QueueUrl].append(record)
        self.sent[QueueUrl].append(record)
        return {"MessageId": message_id}

    def receive_message(self, QueueUrl, MaxNumberOfMessages=1, WaitTimeSeconds=0,  # noqa: N803
                        AttributeNames=None, MessageAttributeNames=None):
        batch = [m for m in self.queues[QueueUrl] if m["ReceiptHandle"] not in self.deleted]
        return {"Messages": batch[:MaxNumberOfMessages]}

    def delete_message(self, QueueUrl, ReceiptHandle):  # noqa: N803
        self.deleted.append(ReceiptHandle)
        self.queues[QueueUrl] = [m for m in self.queues[QueueUrl] if m["ReceiptHandle"] != ReceiptHandle]
        return {}

    def get_queue_attributes(self, QueueUrl, AttributeNames):  # noqa: N803
        return {
            "Attributes": {
                "ApproximateNumberOfMessages": str(len(self.queues[QueueUrl])),
                "ApproximateNumberOfMessagesNotVisible": "0",
            }
        }


class FakeEvents:
    def __init__(self, fail=None):
        self.entries = []
        self.fail = fail

    def put_events(self, Entries):  # noqa: N803
        if self.fail is not None:
            raise self.fail
        self.entries.extend(Entries)
        return {"FailedEntryCount": 0, "Entries": [{"EventId": str(uuid.uuid4())} for _ in Entries]}


class FakeApiGateway:
    def __init__(self):
        self.lock = threading.Lock()
        self.posts = []
        self.gone = set()
        self.broken = set()

    def post_to_connection(self, ConnectionId, Data):  # noqa: N803
        if ConnectionId in self.gone:
            raise _client_error("GoneException", "PostToConnection", status=410)
        if ConnectionId in self.broken:
            raise _client_error("InternalServerErrorException", "PostToConnection", status=500)
        with self.lock:
            self.posts.append((ConnectionId, Data))
        return {}

    def delivered_to(self, connection_id):
        return [data for cid, data in self.posts if cid == connection_id]


class RecordingSleep:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def make_settings(**overrides):
    base = dict(
        region="us-east-1",
        queue_table="handoff-queue-test",
        connections_table="websocket-connections-test",
        max_queue_size=100,
        max_wait_time_seconds=300,
        ttl_days=7,
        max_ttl_horizon_days=8,
        max_active_per_advisor=3,
        redis_url="redis://localhost:6379/0",
        websocket_endpoint="https://example.execute-api.us-east-1.amazonaws.com/test",
        fanout_max_workers=4,
        message_queue_url=QUEUE_URL,
        dead_letter_queue_url=DLQ_URL,
        retry_max_attempts=3,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        chat_api_url="https://chat.example.com/v1",
        chat_api_timeout=5,
    )
    base.update(overrides)
    return HandoffSettings(**base)


def make_context(redis_client=None, **overrides):
    """Full component graph over fakes. Returns ``(ctx, fakes)``."""
    settings = make_settings(**overrides)
    clients = AwsClients(
        ddb=FakeDynamoDB(settings),
        sqs=FakeSqs(),
        events=FakeEvents(),
        apigw=FakeApiGateway(),
        redis=FakeRedis() if redis_client is None else redis_client,
    )
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep, rand=lambda lo, hi: 0.0)
    ctx = HandoffContext.build(settings=settings, clients=clients, executor=executor)
    return ctx, {
        "ddb": clients.ddb,
        "sqs": clients.sqs,
        "events": clients.events,
        "apigw": clients.apigw,
        "redis": clients.redis,
        "sleep": sleep,
    }
