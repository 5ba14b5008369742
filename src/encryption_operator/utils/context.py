"""Per-sync correlation ids and the trace id of the running span."""

from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "encryption_sync_correlation_id", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:16]


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def with_correlation_id(corr_id: str) -> Iterator[str]:
    """Tag every log line of one controller sync with the same id.

    Yields:
        The correlation id
    """
    token = _correlation_id.set(corr_id)
    try:
        yield corr_id
    finally:
        _correlation_id.reset(token)


def current_trace_id() -> str | None:
    """Hex trace id of the recording span, if any."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def get_context_dict(additional: dict[str, Any] | None = None) -> dict[str, Any]:
    """Collect the fields every structured log record carries.

    Args:
        additional: Extra fields merged last

    Returns:
        correlation_id and trace_id where known, plus the extra fields
    """
    ctx: dict[str, Any] = {}
    corr_id = get_correlation_id()
    if corr_id:
        ctx["correlation_id"] = corr_id
    trace_id = current_trace_id()
    if trace_id:
        ctx["trace_id"] = trace_id
    if additional:
        ctx.update(additional)
    return ctx
