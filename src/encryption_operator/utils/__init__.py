"""Utility functions for the Encryption Operator."""

from .conditions import (
    find_condition,
    set_degraded_condition,
    set_encrypted_condition,
    update_condition,
)
from .context import (
    get_context_dict,
    get_correlation_id,
    new_correlation_id,
    current_trace_id,
    with_correlation_id,
)
from .errors import sanitize_exception
from .events import EventRecorder, KopfEventRecorder, emit_event
from .rate_limit import handle_rate_limit_error, rate_limit_k8s
from .workqueue import RateLimitingQueue

__all__ = [
    "update_condition",
    "find_condition",
    "set_degraded_condition",
    "set_encrypted_condition",
    "emit_event",
    "EventRecorder",
    "KopfEventRecorder",
    "sanitize_exception",
    "rate_limit_k8s",
    "handle_rate_limit_error",
    "RateLimitingQueue",
    "get_correlation_id",
    "new_correlation_id",
    "with_correlation_id",
    "get_context_dict",
    "current_trace_id",
]
