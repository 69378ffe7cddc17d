"""context.py — Per-process component graph.

``HandoffContext.build`` constructs everything leaves first (clients,
metrics, cache, store, registry, push, events, controller, queue, retry,
processor) and wires each component with exactly what it uses. Entry points
build one context per process and pass it down; nothing else holds global
state.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from handoff_relay.aws_clients import AwsClients, build_clients
from handoff_relay.cache import HandoffCache
from handoff_relay.chat_delivery import ChatDeliveryClient
from handoff_relay.config import HandoffSettings
from handoff_relay.connections import ConnectionRegistry
from handoff_relay.controller import HandoffController
from handoff_relay.events import HandoffEventPublisher
from handoff_relay.metrics import HandoffMetrics
from handoff_relay.persistence import HandoffStore
from handoff_relay.processor import QueueProcessor
from handoff_relay.push import PushNotifier
from handoff_relay.retry import RetryConfig, RetryExecutor
from handoff_relay.work_queue import WorkQueueClient

__all__ = ["HandoffContext"]


@dataclass
class HandoffContext:
    settings: HandoffSettings
    clients: AwsClients
    metrics: HandoffMetrics
    cache: HandoffCache
    store: HandoffStore
    registry: ConnectionRegistry
    notifier: PushNotifier
    publisher: HandoffEventPublisher
    controller: HandoffController
    work_queue: WorkQueueClient
    executor: RetryExecutor
    processor: QueueProcessor

    @classmethod
    def build(
        cls,
        settings: Optional[HandoffSettings] = None,
        clients: Optional[AwsClients] = None,
        executor: Optional[RetryExecutor] = None,
    ) -> "HandoffContext":
        settings = settings or HandoffSettings.from_env()
        clients = clients or build_clients(settings)
        metrics = HandoffMetrics()
        cache = HandoffCache(
            clients.redis,
            metrics,
            key_prefix=settings.cache_key_prefix,
            item_ttl_seconds=settings.cache_item_ttl_seconds,
            advisor_ttl_seconds=settings.cache_advisor_ttl_seconds,
        )
        store = HandoffStore(clients.ddb, cache, metrics, settings)
        registry = ConnectionRegistry(clients.ddb, metrics, settings)
        notifier = PushNotifier(clients.apigw, registry, metrics, max_workers=settings.fanout_max_workers)
        publisher = HandoffEventPublisher(clients.events, notifier, metrics, settings)
        controller = HandoffController(store, cache, publisher, metrics, settings)
        work_queue = WorkQueueClient(clients.sqs, metrics, settings)
        retry_config = RetryConfig.from_settings(settings)
        executor = executor or RetryExecutor(retry_config)
        delivery = ChatDeliveryClient(notifier, settings)
        processor = QueueProcessor(work_queue, delivery.deliver, executor, metrics, retry_config)
        return cls(
            settings=settings,
            clients=clients,
            metrics=metrics,
            cache=cache,
            store=store,
            registry=registry,
            notifier=notifier,
            publisher=publisher,
            controller=controller,
            work_queue=work_queue,
            executor=executor,
            processor=processor,
        )
