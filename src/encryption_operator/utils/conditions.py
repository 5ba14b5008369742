"""Operator status conditions written by the encryption controllers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..constants import COND_ENCRYPTED

Condition = dict[str, Any]


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, if present."""
    return next((c for c in conditions if c.get("type") == condition_type), None)


def update_condition(
    conditions: list[Condition],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[Condition]:
    """Set a condition in place, appending it when the type is new.

    lastTransitionTime only moves when the status flips, so a controller that
    keeps reporting the same status with a new message does not look like it
    transitioned.

    Args:
        conditions: Conditions of the operator status, modified in place
        condition_type: Condition type
        status: "True", "False" or "Unknown"
        reason: CamelCase reason
        message: Human-readable message
        observed_generation: Generation of the operator resource, if known

    Returns:
        The same list
    """
    current = find_condition(conditions, condition_type)
    transition_time = datetime.now(timezone.utc).isoformat()
    if current is not None and current.get("status") == status:
        transition_time = current.get("lastTransitionTime", transition_time)

    updated: Condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": transition_time,
    }
    if observed_generation is not None:
        updated["observedGeneration"] = observed_generation

    if current is None:
        conditions.append(updated)
    else:
        conditions[conditions.index(current)] = updated
    return conditions


def set_degraded_condition(
    conditions: list[Condition],
    condition_type: str,
    error_message: str | None,
) -> list[Condition]:
    """Set a controller's Degraded condition.

    Args:
        conditions: Conditions of the operator status
        condition_type: Degraded condition type of the controller
        error_message: Sanitized error, or None when the sync succeeded
    """
    if error_message is None:
        return update_condition(conditions, condition_type, "False", "AsExpected", "")
    return update_condition(conditions, condition_type, "True", "Error", error_message)


def set_encrypted_condition(conditions: list[Condition], status: str, reason: str, message: str) -> list[Condition]:
    return update_condition(conditions, COND_ENCRYPTED, status, reason, message)
