"""
Bounded retry for transport calls (SQS, S3, SES, Postgres).

One policy object is built from config and handed to every adapter
constructor; adapters wrap each remote call in retry_call(). botocore's
own retries are switched off in the clients so this is the only retry layer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .constants import (
    DEFAULT_MAX_EXECUTION_TIME,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    RETRIABLE_ERROR_CODES,
)
from .logging import get_logger


@dataclass(frozen=True)
class RetryPolicy:
    """Linear retry: a fixed pause between attempts, capped by count and total time."""
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF
    max_execution_time: float = DEFAULT_MAX_EXECUTION_TIME

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        if self.max_execution_time <= 0:
            raise ValueError("max_execution_time must be > 0")


NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0.0)


def error_code(error: Exception) -> str:
    """Extract the AWS error code from a ClientError ('' otherwise)."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def is_transient(error: Exception, extra_types: Tuple[Type[BaseException], ...] = ()) -> bool:
    """True for throttling/5xx ClientErrors, botocore network errors and any extra_types."""
    if isinstance(error, ClientError):
        return error_code(error) in RETRIABLE_ERROR_CODES
    if isinstance(error, BotoCoreError):
        return True
    return bool(extra_types) and isinstance(error, extra_types)


def retry_call(
    policy: RetryPolicy,
    func: Callable[..., Any],
    *args: Any,
    operation: str = "call",
    transient: Tuple[Type[BaseException], ...] = (),
    logger=None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    **kwargs: Any,
) -> Any:
    """
    Call func(*args, **kwargs), retrying transient failures per policy.

    Non-transient errors and the last transient error are re-raised unchanged.
    """
    log = logger or get_logger("retry")
    started = clock()
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_transient(e, transient):
                raise
            elapsed = clock() - started
            out_of_time = elapsed + policy.backoff_seconds > policy.max_execution_time
            if attempt >= policy.max_attempts or out_of_time:
                log.warning(f"{operation} failed, retries exhausted", {
                    "attempt": attempt,
                    "error": f"{type(e).__name__}: {e}",
                })
                raise
            log.warning(f"{operation} retry {attempt}/{policy.max_attempts}", {
                "error": f"{type(e).__name__}: {e}",
                "backoff": policy.backoff_seconds,
            })
            if policy.backoff_seconds:
                sleep(policy.backoff_seconds)
            attempt += 1


def client_config(**overrides: Any) -> Config:
    """botocore Config with SDK retries disabled; timeouts tuned for SQS long-polling."""
    params = {
        "retries": {"max_attempts": 0, "mode": "standard"},
        "read_timeout": 70,     # > 20s long-poll
        "connect_timeout": 3,
    }
    params.update(overrides)
    return Config(**params)


__all__ = ["RetryPolicy", "NO_RETRY", "error_code", "is_transient", "retry_call", "client_config"]
