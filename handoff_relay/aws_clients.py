"""aws_clients.py — boto3 and Redis client construction.

Clients are built once per process by ``build_clients`` and carried in the
``HandoffContext``; components receive the specific client they use. Every
client is configured with bounded connect/read timeouts.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import boto3
import redis
from botocore.config import Config

from handoff_relay.config import HandoffSettings, logger

__all__ = [
    "AwsClients",
    "_build_apigw",
    "_build_client",
    "_build_redis",
    "build_clients",
]


def _client_config(settings: HandoffSettings, max_attempts: int) -> Config:
    return Config(
        connect_timeout=settings.aws_connect_timeout,
        read_timeout=settings.aws_read_timeout,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )


def _build_client(service: str, settings: HandoffSettings, max_attempts: int = 3):
    """Create a boto3 client for ``service`` in the configured region."""
    return boto3.client(
        service,
        region_name=settings.region,
        config=_client_config(settings, max_attempts),
    )


def _build_apigw(settings: HandoffSettings):
    """Create the API Gateway Management API client for WebSocket pushes.

    Returns None when no WebSocket endpoint is configured; pushes are then
    skipped and logged.
    """
    if not settings.websocket_endpoint:
        logger.warning("WEBSOCKET_API_ENDPOINT not set; push notifications disabled")
        return None
    endpoint = settings.websocket_endpoint
    if endpoint.startswith("wss://"):
        endpoint = "https://" + endpoint[len("wss://"):]
    return boto3.client(
        "apigatewaymanagementapi",
        endpoint_url=endpoint,
        region_name=settings.region,
        # Gone connections must surface on the first attempt.
        config=_client_config(settings, 1),
    )


def _build_redis(settings: HandoffSettings) -> Optional[redis.Redis]:
    """Create a Redis client from REDIS_URL, or None to run store-only."""
    if not settings.redis_url:
        logger.info("REDIS_URL not set; handoff cache disabled")
        return None
    pool = redis.ConnectionPool.from_url(
        settings.redis_url,
        socket_connect_timeout=settings.redis_timeout_seconds,
        socket_timeout=settings.redis_timeout_seconds,
        retry_on_timeout=False,
        health_check_interval=30,
        decode_responses=True,
    )
    return redis.Redis(connection_pool=pool)


@dataclass
class AwsClients:
    ddb: Any
    sqs: Any
    events: Any
    apigw: Any
    redis: Any


def build_clients(settings: HandoffSettings) -> AwsClients:
    return AwsClients(
        ddb=_build_client("dynamodb", settings, max_attempts=5),
        sqs=_build_client("sqs", settings),
        events=_build_client("events", settings),
        apigw=_build_apigw(settings),
        redis=_build_redis(settings),
    )
