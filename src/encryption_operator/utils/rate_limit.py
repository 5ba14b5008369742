"""Rate limiting utilities for API calls and controller retries."""

from __future__ import annotations

import os
import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

from kubernetes.client.exceptions import ApiException

from .. import metrics

_F = TypeVar("_F", bound=Callable[..., Any])

# Rate limit configuration
_K8S_RATE_LIMIT_PER_SECOND = float(os.getenv("K8S_RATE_LIMIT_PER_SECOND", "10.0"))

# Retry backoff: 1s, 2s, 4s, 8s, 16s, 32s, 60s (max)
MIN_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 60.0
RETRY_BACKOFF = 2.0

# Track last call times
_k8s_last_call_time: float = 0.0
_k8s_lock = threading.Lock()


def rate_limit_k8s(func: _F) -> _F:
    """Decorator to rate limit Kubernetes API calls.

    Implements a simple token bucket-like rate limiter to prevent overwhelming
    the Kubernetes API server. Shared by all controller threads.
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        global _k8s_last_call_time
        with _k8s_lock:
            current_time = time.time()
            min_interval = 1.0 / _K8S_RATE_LIMIT_PER_SECOND

            time_since_last_call = current_time - _k8s_last_call_time
            if time_since_last_call < min_interval:
                sleep_time = min_interval - time_since_last_call
                time.sleep(sleep_time)

            _k8s_last_call_time = time.time()
        return func(*args, **kwargs)

    return wrapper  # type: ignore


def is_rate_limit_error(e: Exception) -> bool:
    """Check if an exception is a Kubernetes API rate limit error.

    Kubernetes API rate limit errors typically return 429, or 503 with a
    rate limit message.
    """
    if not isinstance(e, ApiException):
        return False
    return e.status == 429 or (e.status == 503 and "rate limit" in str(e).lower())


def handle_rate_limit_error(e: Exception) -> bool:
    """Record a rate limit error so the caller can requeue with backoff.

    Args:
        e: Exception raised by an API call

    Returns:
        True if the error was a rate limit error, False otherwise
    """
    if is_rate_limit_error(e):
        metrics.rate_limit_hits_total.labels(api_type="kubernetes").inc()
        return True
    return False


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff between a minimum and a maximum delay."""

    def __init__(
        self,
        base_delay: float = MIN_RETRY_DELAY,
        max_delay: float = MAX_RETRY_DELAY,
        factor: float = RETRY_BACKOFF,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self._failures: dict[Any, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Any) -> float:
        """Return the delay for the next retry of item and count the failure."""
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        return min(self.base_delay * (self.factor ** failures), self.max_delay)

    def num_requeues(self, item: Any) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Any) -> None:
        with self._lock:
            self._failures.pop(item, None)
