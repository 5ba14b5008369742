"""Tests for the Encrypted condition."""

from __future__ import annotations

from unittest.mock import MagicMock

from encryption_operator.constants import (
    COND_ENCRYPTED,
    REASON_DECRYPTION_COMPLETED,
    REASON_DECRYPTION_IN_PROGRESS,
    REASON_ENCRYPTION_COMPLETED,
    REASON_ENCRYPTION_DISABLED,
    REASON_ENCRYPTION_IN_PROGRESS,
    REASON_PRECONDITION_NOT_READY,
)
from encryption_operator.controllers.condition import ConditionController, compute_encrypted_condition
from encryption_operator.secrets import to_key_state
from encryption_operator.state import IDENTITY, GroupResourceState

from helpers import (
    COMPONENT,
    GRS,
    SECRETS,
    FakeDeployer,
    FakeOperatorClient,
    core_api_with_secrets,
    fake_precondition,
    fake_provider,
    make_config_secret,
    make_key_secret,
)


def backed(generation: int, mode: str = "aescbc", migrated=None):
    return to_key_state(make_key_secret(generation, mode, migrated=migrated))


class TestComputeEncryptedCondition:
    """Test cases for compute_encrypted_condition."""

    def test_no_keys(self):
        cond = compute_encrypted_condition(GRS, {}, {}, [])
        assert (cond.status, cond.reason) == ("False", REASON_ENCRYPTION_DISABLED)
        assert cond.message == "Encryption is not enabled"

    def test_all_migrated(self):
        state = {gr: GroupResourceState(write_key=backed(1, migrated=GRS)) for gr in GRS}

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(1)])

        assert cond.status == "True"
        assert cond.reason == REASON_ENCRYPTION_COMPLETED
        assert cond.message == "All resources encrypted: configmaps, secrets"

    def test_resource_without_write_key(self):
        state = {SECRETS: GroupResourceState(write_key=backed(1, migrated=GRS))}

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(1)])

        assert cond.reason == REASON_ENCRYPTION_IN_PROGRESS
        assert cond.message == "Resource configmaps is not encrypted"

    def test_being_encrypted(self):
        state = {gr: GroupResourceState(write_key=backed(1)) for gr in GRS}

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(1)])

        assert cond.status == "False"
        assert cond.message == "Resource configmaps is being encrypted"

    def test_older_migrated_read_key_counts(self):
        """Test that rotation does not flip the condition while an older key still holds the data."""
        state = {gr: GroupResourceState(write_key=backed(2), read_keys=[backed(1, migrated=GRS)]) for gr in GRS}

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(1), make_key_secret(2)])

        assert cond.status == "True"

    def test_identity_read_key_means_ongoing(self):
        state = {
            gr: GroupResourceState(write_key=backed(2), read_keys=[backed(1, mode=IDENTITY, migrated=GRS)])
            for gr in GRS
        }

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(1, IDENTITY), make_key_secret(2)])

        assert cond.message == "Encryption is ongoing"

    def test_decryption_announced_by_desired_state(self):
        desired = {gr: GroupResourceState(write_key=backed(2, mode=IDENTITY)) for gr in GRS}
        current = {gr: GroupResourceState(write_key=backed(1, migrated=GRS)) for gr in GRS}

        cond = compute_encrypted_condition(GRS, desired, current, [make_key_secret(1)])

        assert cond.reason == REASON_DECRYPTION_IN_PROGRESS

    def test_decryption_completed(self):
        state = {gr: GroupResourceState(write_key=backed(2, mode=IDENTITY, migrated=GRS)) for gr in GRS}

        cond = compute_encrypted_condition(GRS, state, state, [make_key_secret(2, IDENTITY)])

        assert (cond.status, cond.reason) == ("False", REASON_DECRYPTION_COMPLETED)


def make_controller(secrets=None, deployed=None, precondition=None, deployer=None) -> ConditionController:
    return ConditionController(
        component=COMPONENT,
        operator_client=FakeOperatorClient(),
        event_recorder=MagicMock(),
        deployer=deployer or FakeDeployer(make_config_secret(deployed or {})),
        provider=fake_provider(),
        precondition=precondition or fake_precondition(),
        core_api=core_api_with_secrets(*(secrets or [])),
    )


class TestConditionControllerSync:
    """Test cases for ConditionController.sync."""

    def test_unsynced_caches(self):
        controller = make_controller()
        source = MagicMock()
        source.has_synced.return_value = False
        controller.watch(source)

        controller.sync()

        cond = controller.operator_client.condition(COND_ENCRYPTED)
        assert (cond["status"], cond["reason"]) == ("Unknown", REASON_PRECONDITION_NOT_READY)

    def test_disabled(self):
        controller = make_controller(precondition=fake_precondition(fulfilled=False))

        controller.sync()

        cond = controller.operator_client.condition(COND_ENCRYPTED)
        assert (cond["status"], cond["reason"]) == ("False", REASON_ENCRYPTION_DISABLED)

    def test_encrypted(self):
        secrets = [make_key_secret(1, migrated=GRS)]
        deployed = {gr: GroupResourceState(write_key=to_key_state(secrets[0])) for gr in GRS}
        controller = make_controller(secrets=secrets, deployed=deployed)

        controller.sync()

        cond = controller.operator_client.condition(COND_ENCRYPTED)
        assert (cond["status"], cond["reason"]) == ("True", REASON_ENCRYPTION_COMPLETED)

    def test_transitioning_keeps_condition(self):
        controller = make_controller(secrets=[make_key_secret(1)], deployer=FakeDeployer(converged=False))

        controller.sync()

        assert controller.operator_client.condition(COND_ENCRYPTED) is None
        assert controller.operator_client.updates == 0
