"""config.py — Environment variables, constants, message templates, logging.

Values are read once per process. Components never read the environment
directly; they receive a ``HandoffSettings`` built by ``HandoffSettings.from_env``
through the ``HandoffContext``.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

__all__ = [
    "ADVISOR_GROUP",
    "ALL_PRIORITIES",
    "ALL_STATUSES",
    "BROADCAST_SCAN_LIMIT",
    "CACHE_ADVISOR_STATUS_TTL_SECONDS",
    "CACHE_KEY_PREFIX",
    "CACHE_QUEUE_ITEM_TTL_SECONDS",
    "CHAT_API_KEY",
    "CHAT_API_TIMEOUT_SECONDS",
    "CHAT_API_URL",
    "COGNITO_CLIENT_ID",
    "COGNITO_USER_POOL_ID",
    "CONNECTIONS_TABLE",
    "CONNECTIONS_USER_INDEX",
    "CONNECTION_TTL_SECONDS",
    "DEAD_LETTER_QUEUE_URL",
    "DYNAMODB_REGION",
    "HANDOFF_ADVISOR_INDEX",
    "HANDOFF_EVENT_BUS",
    "HANDOFF_EVENT_SOURCE",
    "HANDOFF_INTERNAL_API_KEY",
    "HANDOFF_QUEUE_TABLE",
    "HANDOFF_STATUS_INDEX",
    "HANDOFF_TTL_DAYS",
    "HandoffSettings",
    "MAX_QUEUE_SIZE",
    "MAX_WAIT_TIME_SECONDS",
    "MESSAGE_QUEUE_URL",
    "PRIORITY_WEIGHTS",
    "REDIS_URL",
    "STALE_CONNECTION_MINUTES",
    "STATUS_MESSAGES",
    "TERMINAL_STATUSES",
    "_TRANSITIONS",
    "logger",
]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("handoff_relay")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "us-east-1")
HANDOFF_QUEUE_TABLE = os.environ.get("HANDOFF_QUEUE_TABLE", "handoff-queue")
HANDOFF_STATUS_INDEX = os.environ.get("HANDOFF_STATUS_INDEX", "StatusIndex")
HANDOFF_ADVISOR_INDEX = os.environ.get("HANDOFF_ADVISOR_INDEX", "AdvisorIndex")
CONNECTIONS_TABLE = os.environ.get("CONNECTIONS_TABLE", "websocket-connections")
CONNECTIONS_USER_INDEX = os.environ.get("CONNECTIONS_USER_INDEX", "UserIdIndex")

# ---------------------------------------------------------------------------
# Admission control and state machine
# ---------------------------------------------------------------------------

MAX_QUEUE_SIZE = int(os.environ.get("MAX_QUEUE_SIZE", "100"))
MAX_WAIT_TIME_SECONDS = int(os.environ.get("MAX_WAIT_TIME_SECONDS", "300"))
HANDOFF_TTL_DAYS = int(os.environ.get("HANDOFF_TTL_DAYS", "7"))
MAX_TTL_HORIZON_DAYS = int(os.environ.get("MAX_TTL_HORIZON_DAYS", str(HANDOFF_TTL_DAYS + 1)))
MAX_ACTIVE_HANDOFFS_PER_ADVISOR = int(os.environ.get("MAX_ACTIVE_HANDOFFS_PER_ADVISOR", "3"))

ALL_STATUSES: Tuple[str, ...] = ("pending", "assigned", "active", "completed", "cancelled", "timeout")
TERMINAL_STATUSES = frozenset({"completed", "cancelled", "timeout"})
ALL_PRIORITIES: Tuple[str, ...] = ("low", "medium", "high")
PRIORITY_WEIGHTS: Dict[str, int] = {"high": 3, "medium": 2, "low": 1}

_TRANSITIONS: Dict[str, set] = {
    "pending": {"assigned", "cancelled", "timeout"},
    "assigned": {"active", "completed", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "timeout": set(),
}

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

REDIS_URL = os.environ.get("REDIS_URL", "")
REDIS_TIMEOUT_SECONDS = float(os.environ.get("REDIS_TIMEOUT_SECONDS", "2"))
CACHE_KEY_PREFIX = os.environ.get("CACHE_KEY_PREFIX", "handoff:")
CACHE_QUEUE_ITEM_TTL_SECONDS = int(os.environ.get("CACHE_QUEUE_ITEM_TTL_SECONDS", "300"))
CACHE_ADVISOR_STATUS_TTL_SECONDS = int(os.environ.get("CACHE_ADVISOR_STATUS_TTL_SECONDS", "60"))

# ---------------------------------------------------------------------------
# Connections, push channel, events
# ---------------------------------------------------------------------------

WEBSOCKET_API_ENDPOINT = os.environ.get("WEBSOCKET_API_ENDPOINT", "")
CONNECTION_TTL_SECONDS = int(os.environ.get("CONNECTION_TTL_SECONDS", "86400"))
STALE_CONNECTION_MINUTES = int(os.environ.get("STALE_CONNECTION_MINUTES", "60"))
BROADCAST_SCAN_LIMIT = int(os.environ.get("BROADCAST_SCAN_LIMIT", "1000"))
FANOUT_MAX_WORKERS = int(os.environ.get("FANOUT_MAX_WORKERS", "8"))
HANDOFF_EVENT_BUS = os.environ.get("HANDOFF_EVENT_BUS", "default")
HANDOFF_EVENT_SOURCE = os.environ.get("HANDOFF_EVENT_SOURCE", "spectra.handoff")

# ---------------------------------------------------------------------------
# Work queue and retry
# ---------------------------------------------------------------------------

MESSAGE_QUEUE_URL = os.environ.get("MESSAGE_QUEUE_URL", "")
DEAD_LETTER_QUEUE_URL = os.environ.get("DEAD_LETTER_QUEUE_URL", "")
QUEUE_LONG_POLL_SECONDS = int(os.environ.get("QUEUE_LONG_POLL_SECONDS", "20"))
QUEUE_MAX_BATCH = int(os.environ.get("QUEUE_MAX_BATCH", "10"))
RETRY_MAX_ATTEMPTS = int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.environ.get("RETRY_BASE_DELAY_SECONDS", "1.0"))
RETRY_MAX_DELAY_SECONDS = float(os.environ.get("RETRY_MAX_DELAY_SECONDS", "30.0"))

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

AWS_CONNECT_TIMEOUT_SECONDS = int(os.environ.get("AWS_CONNECT_TIMEOUT_SECONDS", "3"))
AWS_READ_TIMEOUT_SECONDS = int(os.environ.get("AWS_READ_TIMEOUT_SECONDS", "10"))
CHAT_API_URL = os.environ.get("CHAT_API_URL", "")
CHAT_API_KEY = os.environ.get("CHAT_API_KEY", "")
CHAT_API_TIMEOUT_SECONDS = int(os.environ.get("CHAT_API_TIMEOUT_SECONDS", "10"))

COGNITO_USER_POOL_ID = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID", "")
HANDOFF_INTERNAL_API_KEY = os.environ.get("HANDOFF_INTERNAL_API_KEY", "")
ADVISOR_GROUP = os.environ.get("ADVISOR_GROUP", "advisors")

# ---------------------------------------------------------------------------
# Notification texts keyed by status, then recipient role
# ---------------------------------------------------------------------------

STATUS_MESSAGES: Dict[str, Dict[str, str]] = {
    "pending": {
        "user": "Your request has been queued. An advisor will be with you shortly.",
        "advisor": "A new handoff request is waiting in the queue.",
    },
    "assigned": {
        "user": "An advisor has been assigned and will join the conversation shortly.",
        "advisor": "A new conversation has been assigned to you.",
    },
    "active": {
        "user": "You are now connected with an advisor.",
        "advisor": "The conversation is now active.",
    },
    "completed": {
        "user": "The conversation with your advisor has ended. Thank you for your patience.",
        "advisor": "The conversation has been completed successfully.",
    },
    "cancelled": {
        "user": "Your request for an advisor has been cancelled.",
        "advisor": "The handoff has been cancelled.",
    },
    "timeout": {
        "user": "No advisor was available in time. Please try again later.",
        "advisor": "The handoff request expired before it was assigned.",
    },
}


@dataclass(frozen=True)
class HandoffSettings:
    """Process-lifetime settings injected into every component."""

    region: str = DYNAMODB_REGION
    queue_table: str = HANDOFF_QUEUE_TABLE
    status_index: str = HANDOFF_STATUS_INDEX
    advisor_index: str = HANDOFF_ADVISOR_INDEX
    connections_table: str = CONNECTIONS_TABLE
    connections_user_index: str = CONNECTIONS_USER_INDEX
    max_queue_size: int = MAX_QUEUE_SIZE
    max_wait_time_seconds: int = MAX_WAIT_TIME_SECONDS
    ttl_days: int = HANDOFF_TTL_DAYS
    max_ttl_horizon_days: int = MAX_TTL_HORIZON_DAYS
    max_active_per_advisor: int = MAX_ACTIVE_HANDOFFS_PER_ADVISOR
    redis_url: str = REDIS_URL
    redis_timeout_seconds: float = REDIS_TIMEOUT_SECONDS
    cache_key_prefix: str = CACHE_KEY_PREFIX
    cache_item_ttl_seconds: int = CACHE_QUEUE_ITEM_TTL_SECONDS
    cache_advisor_ttl_seconds: int = CACHE_ADVISOR_STATUS_TTL_SECONDS
    websocket_endpoint: str = WEBSOCKET_API_ENDPOINT
    connection_ttl_seconds: int = CONNECTION_TTL_SECONDS
    stale_connection_minutes: int = STALE_CONNECTION_MINUTES
    broadcast_scan_limit: int = BROADCAST_SCAN_LIMIT
    fanout_max_workers: int = FANOUT_MAX_WORKERS
    event_bus: str = HANDOFF_EVENT_BUS
    event_source: str = HANDOFF_EVENT_SOURCE
    message_queue_url: str = MESSAGE_QUEUE_URL
    dead_letter_queue_url: str = DEAD_LETTER_QUEUE_URL
    long_poll_seconds: int = QUEUE_LONG_POLL_SECONDS
    max_batch: int = QUEUE_MAX_BATCH
    retry_max_attempts: int = RETRY_MAX_ATTEMPTS
    retry_base_delay: float = RETRY_BASE_DELAY_SECONDS
    retry_max_delay: float = RETRY_MAX_DELAY_SECONDS
    aws_connect_timeout: int = AWS_CONNECT_TIMEOUT_SECONDS
    aws_read_timeout: int = AWS_READ_TIMEOUT_SECONDS
    chat_api_url: str = CHAT_API_URL
    chat_api_key: str = CHAT_API_KEY
    chat_api_timeout: int = CHAT_API_TIMEOUT_SECONDS
    status_messages: Dict[str, Dict[str, str]] = field(default_factory=lambda: STATUS_MESSAGES)

    @classmethod
    def from_env(cls) -> "HandoffSettings":
        """Build settings from the current environment.

        Module constants are read at import time; this re-reads the
        environment so a warm container picks up test overrides.
        """
        env = os.environ
        ttl_days = int(env.get("HANDOFF_TTL_DAYS", str(HANDOFF_TTL_DAYS)))
        return cls(
            region=env.get("DYNAMODB_REGION", DYNAMODB_REGION),
            queue_table=env.get("HANDOFF_QUEUE_TABLE", HANDOFF_QUEUE_TABLE),
            status_index=env.get("HANDOFF_STATUS_INDEX", HANDOFF_STATUS_INDEX),
            advisor_index=env.get("HANDOFF_ADVISOR_INDEX", HANDOFF_ADVISOR_INDEX),
            connections_table=env.get("CONNECTIONS_TABLE", CONNECTIONS_TABLE),
            connections_user_index=env.get("CONNECTIONS_USER_INDEX", CONNECTIONS_USER_INDEX),
            max_queue_size=int(env.get("MAX_QUEUE_SIZE", str(MAX_QUEUE_SIZE))),
            max_wait_time_seconds=int(env.get("MAX_WAIT_TIME_SECONDS", str(MAX_WAIT_TIME_SECONDS))),
            ttl_days=ttl_days,
            max_ttl_horizon_days=int(env.get("MAX_TTL_HORIZON_DAYS", str(ttl_days + 1))),
            max_active_per_advisor=int(
                env.get("MAX_ACTIVE_HANDOFFS_PER_ADVISOR", str(MAX_ACTIVE_HANDOFFS_PER_ADVISOR))
            ),
            redis_url=env.get("REDIS_URL", REDIS_URL),
            redis_timeout_seconds=float(env.get("REDIS_TIMEOUT_SECONDS", str(REDIS_TIMEOUT_SECONDS))),
            cache_key_prefix=env.get("CACHE_KEY_PREFIX", CACHE_KEY_PREFIX),
            cache_item_ttl_seconds=int(
                env.get("CACHE_QUEUE_ITEM_TTL_SECONDS", str(CACHE_QUEUE_ITEM_TTL_SECONDS))
            ),
            cache_advisor_ttl_seconds=int(
                env.get("CACHE_ADVISOR_STATUS_TTL_SECONDS", str(CACHE_ADVISOR_STATUS_TTL_SECONDS))
            ),
            websocket_endpoint=env.get("WEBSOCKET_API_ENDPOINT", WEBSOCKET_API_ENDPOINT),
            connection_ttl_seconds=int(env.get("CONNECTION_TTL_SECONDS", str(CONNECTION_TTL_SECONDS))),
            stale_connection_minutes=int(
                env.get("STALE_CONNECTION_MINUTES", str(STALE_CONNECTION_MINUTES))
            ),
            broadcast_scan_limit=int(env.get("BROADCAST_SCAN_LIMIT", str(BROADCAST_SCAN_LIMIT))),
            fanout_max_workers=int(env.get("FANOUT_MAX_WORKERS", str(FANOUT_MAX_WORKERS))),
            event_bus=env.get("HANDOFF_EVENT_BUS", HANDOFF_EVENT_BUS),
            event_source=env.get("HANDOFF_EVENT_SOURCE", HANDOFF_EVENT_SOURCE),
            message_queue_url=env.get("MESSAGE_QUEUE_URL", MESSAGE_QUEUE_URL),
            dead_letter_queue_url=env.get("DEAD_LETTER_QUEUE_URL", DEAD_LETTER_QUEUE_URL),
            long_poll_seconds=int(env.get("QUEUE_LONG_POLL_SECONDS", str(QUEUE_LONG_POLL_SECONDS))),
            max_batch=int(env.get("QUEUE_MAX_BATCH", str(QUEUE_MAX_BATCH))),
            retry_max_attempts=int(env.get("RETRY_MAX_ATTEMPTS", str(RETRY_MAX_ATTEMPTS))),
            retry_base_delay=float(env.get("RETRY_BASE_DELAY_SECONDS", str(RETRY_BASE_DELAY_SECONDS))),
            retry_max_delay=float(env.get("RETRY_MAX_DELAY_SECONDS", str(RETRY_MAX_DELAY_SECONDS))),
            aws_connect_timeout=int(
                env.get("AWS_CONNECT_TIMEOUT_SECONDS", str(AWS_CONNECT_TIMEOUT_SECONDS))
            ),
            aws_read_timeout=int(env.get("AWS_READ_TIMEOUT_SECONDS", str(AWS_READ_TIMEOUT_SECONDS))),
            chat_api_url=env.get("CHAT_API_URL", CHAT_API_URL),
            chat_api_key=env.get("CHAT_API_KEY", CHAT_API_KEY),
            chat_api_timeout=int(env.get("CHAT_API_TIMEOUT_SECONDS", str(CHAT_API_TIMEOUT_SECONDS))),
        )
