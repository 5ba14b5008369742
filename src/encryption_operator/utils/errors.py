"""Error types and sanitization utilities to prevent information leakage."""

from __future__ import annotations

import re
from typing import Callable, Iterable

from kubernetes.client.exceptions import ApiException


class EncryptionError(Exception):
    """Base class for errors raised by the encryption controllers."""


class InvalidKeySecretError(EncryptionError):
    """A key secret cannot be converted into a key state."""


class InvalidEncryptionConfigError(EncryptionError):
    """An EncryptionConfiguration cannot be decoded."""


class RevisionError(EncryptionError):
    """The API server pods report an inconsistent revision state."""


class KMSError(EncryptionError):
    """A KMS plugin call failed or returned unusable data."""


class AggregateError(EncryptionError):
    """Several errors collected during a single sync."""

    def __init__(self, errors: list[Exception]):
        self.errors = errors
        super().__init__(", ".join(str(e) for e in errors))


def new_aggregate(errors: Iterable[Exception | None]) -> Exception | None:
    """Combine errors, ignoring None entries.

    Returns:
        None, the single error, or an AggregateError
    """
    real = [e for e in errors if e is not None]
    if not real:
        return None
    if len(real) == 1:
        return real[0]
    return AggregateError(real)


def filter_out(error: Exception | None, predicate: Callable[[Exception], bool]) -> Exception | None:
    """Drop errors matching the predicate, descending into aggregates."""
    if error is None:
        return None
    if isinstance(error, AggregateError):
        return new_aggregate(filter_out(e, predicate) for e in error.errors)
    if predicate(error):
        return None
    return error


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def is_conflict(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 409


def is_already_exists(error: Exception) -> bool:
    """Check for the 409 a create call returns when the object already exists."""
    return isinstance(error, ApiException) and error.status == 409


_KMS_KEY_ARN = re.compile(r"arn:aws:kms:[a-z0-9\-]+:\d+:key/[a-zA-Z0-9\-]+", re.IGNORECASE)
_KMS_ENDPOINT = re.compile(r"(endpoint)[:=]\s*[a-zA-Z0-9\-\.:/]+", re.IGNORECASE)
_SECRET_VALUE = re.compile(r"\b(secret|key_material|password|token|credentials)[:=]\s*[^\s,;\)]+", re.IGNORECASE)


def sanitize_error_message(message: str) -> str:
    """Redact KMS key ARNs, KMS endpoints and secret values from a message.

    The result ends up in operator conditions and events, which are readable
    by far more users than the key secrets themselves.
    """
    message = _KMS_KEY_ARN.sub("arn:aws:kms:[REDACTED]", message)
    message = _KMS_ENDPOINT.sub(r"\1: [REDACTED]", message)
    return _SECRET_VALUE.sub(r"\1: [REDACTED]", message)


def sanitize_exception(error: Exception) -> str:
    if isinstance(error, ApiException):
        return sanitize_error_message(f"({error.status}) {error.reason}")
    return sanitize_error_message(str(error))
