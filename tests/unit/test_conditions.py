"""Unit tests for condition utilities."""

from __future__ import annotations

from encryption_operator.constants import COND_ENCRYPTED
from encryption_operator.utils.conditions import (
    find_condition,
    set_degraded_condition,
    set_encrypted_condition,
    update_condition,
)


class TestConditions:
    """Test condition utilities."""

    def test_update_condition_new(self) -> None:
        """Test adding a new condition."""
        result = update_condition([], "TestCondition", "True", "TestReason", "Test message", observed_generation=1)

        assert len(result) == 1
        assert result[0]["type"] == "TestCondition"
        assert result[0]["status"] == "True"
        assert result[0]["reason"] == "TestReason"
        assert result[0]["message"] == "Test message"
        assert result[0]["observedGeneration"] == 1
        assert "lastTransitionTime" in result[0]

    def test_update_condition_existing(self) -> None:
        """Test updating an existing condition."""
        conditions = [
            {
                "type": "TestCondition",
                "status": "False",
                "reason": "OldReason",
                "message": "Old message",
                "lastTransitionTime": "2023-01-01T00:00:00Z",
            }
        ]

        result = update_condition(conditions, "TestCondition", "True", "NewReason", "New message")

        assert len(result) == 1
        assert result[0]["status"] == "True"
        assert result[0]["reason"] == "NewReason"
        assert result[0]["lastTransitionTime"] != "2023-01-01T00:00:00Z"

    def test_transition_time_kept_without_status_change(self) -> None:
        conditions = [
            {"type": "TestCondition", "status": "True", "reason": "A", "lastTransitionTime": "2023-01-01T00:00:00Z"}
        ]

        result = update_condition(conditions, "TestCondition", "True", "B", "changed message")

        assert result[0]["lastTransitionTime"] == "2023-01-01T00:00:00Z"
        assert result[0]["reason"] == "B"

    def test_find_condition(self) -> None:
        conditions = update_condition([], "A", "True", "R", "")
        assert find_condition(conditions, "A")["status"] == "True"
        assert find_condition(conditions, "B") is None

    def test_set_degraded_condition_error(self) -> None:
        result = set_degraded_condition([], "EncryptionKeyControllerDegraded", "boom")

        assert result[0]["type"] == "EncryptionKeyControllerDegraded"
        assert result[0]["status"] == "True"
        assert result[0]["reason"] == "Error"
        assert result[0]["message"] == "boom"

    def test_set_degraded_condition_cleared(self) -> None:
        conditions = set_degraded_condition([], "EncryptionKeyControllerDegraded", "boom")

        result = set_degraded_condition(conditions, "EncryptionKeyControllerDegraded", None)

        assert len(result) == 1
        assert (result[0]["status"], result[0]["reason"], result[0]["message"]) == ("False", "AsExpected", "")

    def test_set_encrypted_condition(self) -> None:
        result = set_encrypted_condition([], "True", "EncryptionCompleted", "All resources encrypted: secrets")

        assert result[0]["type"] == COND_ENCRYPTED
        assert result[0]["message"] == "All resources encrypted: secrets"
