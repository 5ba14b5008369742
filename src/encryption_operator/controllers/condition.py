"""Controller maintaining the aggregate ``Encrypted`` condition."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes import client

from .. import encryptionconfig
from ..constants import (
    REASON_DECRYPTION_COMPLETED,
    REASON_DECRYPTION_IN_PROGRESS,
    REASON_ENCRYPTION_COMPLETED,
    REASON_ENCRYPTION_DISABLED,
    REASON_ENCRYPTION_IN_PROGRESS,
    REASON_PRECONDITION_NOT_READY,
)
from ..deployer import Deployer
from ..encryptionconfig import EncryptionState
from ..operatorclient import OperatorClient
from ..preconditions import PreconditionChecker, should_run_encryption_controllers
from ..provider import Provider
from ..state import IDENTITY, GroupResource, KeyState, migrated_for
from ..statemachine import get_encryption_config_and_state
from ..utils.conditions import set_encrypted_condition
from ..utils.events import EventRecorder
from .base import BaseController

MSG_DISABLED = "Encryption is not enabled"
MSG_DECRYPTED = "Encryption mode set to identity and everything is decrypted"
MSG_DECRYPTING = "Encryption mode set to identity and decryption is not finished"


@dataclass
class EncryptedCondition:
    status: str
    reason: str
    message: str


def _identity_condition(write_key: KeyState, encrypted_grs: list[GroupResource]) -> EncryptedCondition:
    if migrated_for(encrypted_grs, write_key)[0]:
        return EncryptedCondition("False", REASON_DECRYPTION_COMPLETED, MSG_DECRYPTED)
    return EncryptedCondition("False", REASON_DECRYPTION_IN_PROGRESS, MSG_DECRYPTING)


def compute_encrypted_condition(
    encrypted_grs: list[GroupResource],
    desired_state: EncryptionState,
    current_state: EncryptionState,
    key_secrets: list[client.V1Secret],
) -> EncryptedCondition:
    """Derive the Encrypted condition from the desired and the deployed state."""
    if not key_secrets:
        return EncryptedCondition("False", REASON_ENCRYPTION_DISABLED, MSG_DISABLED)

    # an identity write key in the desired state announces decryption before it is deployed
    for gr in sorted(desired_state, key=str):
        wk = desired_state[gr].write_key
        if wk is not None and wk.mode == IDENTITY:
            return _identity_condition(wk, encrypted_grs)

    for gr in encrypted_grs:
        grs = current_state.get(gr)
        if grs is None or grs.write_key is None:
            return EncryptedCondition("False", REASON_ENCRYPTION_IN_PROGRESS, f"Resource {gr} is not encrypted")

        if grs.write_key.mode == IDENTITY:
            return _identity_condition(grs.write_key, encrypted_grs)

        if migrated_for([gr], grs.write_key)[0]:
            continue

        # an older key that still holds all data also counts, unless identity comes first
        done = False
        for rk in grs.read_keys:
            if rk.mode == IDENTITY:
                return EncryptedCondition("False", REASON_ENCRYPTION_IN_PROGRESS, "Encryption is ongoing")
            if migrated_for([gr], rk)[0]:
                done = True
                break
        if not done:
            return EncryptedCondition("False", REASON_ENCRYPTION_IN_PROGRESS, f"Resource {gr} is being encrypted")

    names = ", ".join(str(gr) for gr in encrypted_grs)
    return EncryptedCondition("True", REASON_ENCRYPTION_COMPLETED, f"All resources encrypted: {names}")


class ConditionController(BaseController):
    """Reports whether all encrypted resources are stored with a real key."""

    # unsynced caches are reported, not waited for
    wait_for_caches = False

    def __init__(
        self,
        component: str,
        operator_client: OperatorClient,
        event_recorder: EventRecorder,
        deployer: Deployer,
        provider: Provider,
        precondition: PreconditionChecker,
        core_api: client.CoreV1Api,
    ):
        super().__init__("EncryptionConditionController", operator_client, event_recorder)
        self.component = component
        self.deployer = deployer
        self.provider = provider
        self.precondition = precondition
        self.core_api = core_api

    def set_condition(self, cond: EncryptedCondition) -> None:
        def update(status: dict[str, Any]) -> None:
            set_encrypted_condition(status.setdefault("conditions", []), cond.status, cond.reason, cond.message)

        self.operator_client.update_status(update)

    def sync(self) -> float | None:
        if not self.caches_synced():
            self.set_condition(
                EncryptedCondition("Unknown", REASON_PRECONDITION_NOT_READY, "Waiting for caches to sync")
            )
            return None

        if not should_run_encryption_controllers(self.operator_client, self.precondition, self.provider):
            self.set_condition(EncryptedCondition("False", REASON_ENCRYPTION_DISABLED, MSG_DISABLED))
            return None

        encrypted_grs = self.provider.encrypted_grs()
        current_config, desired_state, key_secrets, transitioning = get_encryption_config_and_state(
            self.deployer, self.core_api, self.component, encrypted_grs
        )
        if transitioning:
            # the condition keeps its last value while API servers roll out
            return None

        current_state = encryptionconfig.to_encryption_state(current_config, key_secrets)
        self.set_condition(compute_encrypted_condition(encrypted_grs, desired_state, current_state, key_secrets))
        return None
