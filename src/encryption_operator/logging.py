"""Structured JSON logging for the encryption controllers."""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

from .utils.context import get_context_dict

# Fields whose values never reach the log
SECRET_FIELDS = frozenset({"secret", "key_material", "kms_config", "data"})


def setup_structured_logging(level: str | None = None) -> None:
    """Configure JSON lines on stdout.

    Args:
        level: Log level name, defaults to LOG_LEVEL or INFO
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def log_controller_event(
    logger: logging.Logger,
    controller: str,
    event: str,
    reason: str,
    message: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log one JSON record about a controller.

    The record carries the correlation id of the running sync and, while a
    span is recording, its trace id.
    """
    record: dict[str, Any] = {
        "controller": controller,
        "event": event,
        "reason": reason,
        "message": message,
    }
    record.update(get_context_dict())
    record.update(sanitize_secrets(fields))
    logger.log(level, json.dumps(record, default=str))


def sanitize_secrets(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: "***REDACTED***" if k in SECRET_FIELDS else v for k, v in fields.items()}
