"""retry.py — Bounded retries with exponential backoff and jitter.

    delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) * (1 +/- jitter)

clamped to ``[0, max_delay]``. Only retryable ``HandoffError`` kinds and
unexpected exceptions are retried; validation and business-rule errors go
straight to the final-failure hook.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from handoff_relay.config import HandoffSettings
from handoff_relay.errors import ErrorKind, HandoffError

logger = logging.getLogger("handoff_relay")

__all__ = ["RetryConfig", "RetryExecutor", "RetryableOperation", "compute_delay"]


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings: HandoffSettings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )


@dataclass
class RetryableOperation:
    execute: Callable[[], Any]
    on_success: Optional[Callable[[Any], None]] = None
    on_final_failure: Optional[Callable[[BaseException, int], None]] = None
    name: str = "operation"


def compute_delay(attempt: int, config: RetryConfig, rand: Callable[[float, float], float] = random.uniform) -> float:
    capped = min(config.max_delay, config.base_delay * (2 ** (attempt - 1)))
    jittered = capped * (1 + rand(-config.jitter, config.jitter))
    return min(config.max_delay, max(0.0, jittered))


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, HandoffError):
        return exc.retryable
    return True


class RetryExecutor:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        self.config = config or RetryConfig()
        self.sleep = sleep
        self.rand = rand

    def with_retry(self, operation: RetryableOperation, config: Optional[RetryConfig] = None) -> Any:
        """Run ``operation.execute`` until it succeeds or attempts run out.

        On success ``on_success(result)`` runs and the result is returned. On
        exhaustion (or a non-retryable error) ``on_final_failure(error,
        attempts)`` runs once and a RETRY_EXHAUSTED ``HandoffError`` is
        raised with the attempt count and last error.
        """
        cfg = config or self.config
        attempts = 0
        last_error: Optional[BaseException] = None
        max_attempts = max(1, cfg.max_attempts)
        while attempts < max_attempts:
            attempts += 1
            try:
                result = operation.execute()
            except Exception as exc:
                last_error = exc
                if not _should_retry(exc):
                    logger.info("%s failed with non-retryable error: %s", operation.name, exc)
                    break
                if attempts >= max_attempts:
                    break
                delay = compute_delay(attempts, cfg, self.rand)
                logger.info(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation.name,
                    attempts,
                    max_attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
                continue
            if operation.on_success is not None:
                operation.on_success(result)
            return result

        if operation.on_final_failure is not None:
            operation.on_final_failure(last_error, attempts)
        raise HandoffError(
            ErrorKind.RETRY_EXHAUSTED,
            f"{operation.name} failed after {attempts} attempt(s): {last_error}",
            attempts=attempts,
            last_error=str(last_error),
            last_error_kind=getattr(getattr(last_error, "kind", None), "value", type(last_error).__name__),
        ) from last_error
