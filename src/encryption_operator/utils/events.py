"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import kopf

from .errors import sanitize_error_message

logger = logging.getLogger(__name__)


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Args:
        body: Body (or object reference) of the involved object
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=message,
        type=type_,
    )


class EventRecorder(Protocol):
    """Records events about the operator object."""

    def eventf(self, reason: str, message: str, *args: Any) -> None:
        ...

    def warningf(self, reason: str, message: str, *args: Any) -> None:
        ...


class KopfEventRecorder:
    """EventRecorder posting events for one involved object through kopf."""

    def __init__(self, involved_object: dict[str, Any], component: str = "encryption-operator"):
        self.involved_object = involved_object
        self.component = component

    def with_component_suffix(self, suffix: str) -> KopfEventRecorder:
        return KopfEventRecorder(self.involved_object, f"{self.component}-{suffix}")

    def _emit(self, type_: str, reason: str, message: str, args: tuple[Any, ...]) -> None:
        text = sanitize_error_message(message % args if args else message)
        logger.info(f"{self.component}: {type_} {reason}: {text}")
        emit_event(self.involved_object, reason, text, type_=type_)

    def eventf(self, reason: str, message: str, *args: Any) -> None:
        self._emit("Normal", reason, message, args)

    def warningf(self, reason: str, message: str, *args: Any) -> None:
        self._emit("Warning", reason, message, args)
