"""Controller re-encrypting stored data once a new write key is deployed everywhere."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from kubernetes import client

from .. import encryptionconfig
from ..constants import (
    COND_MIGRATION_CONTROLLER_DEGRADED,
    COND_MIGRATION_CONTROLLER_PROGRESSING,
    EVENT_REASON_MIGRATION_FAILED,
    EVENT_REASON_MIGRATION_FINISHED,
    EVENT_REASON_MIGRATION_STARTED,
    MANAGED_NAMESPACE,
)
from ..deployer import Deployer
from ..encryptionconfig import EncryptionState
from ..migrator import Migrator
from ..operatorclient import OperatorClient
from ..preconditions import PreconditionChecker, should_run_encryption_controllers
from ..provider import Provider
from ..secrets import has_resource, set_migrated, to_key_state
from ..state import GroupResource, KeyState, equal_key_and_equal_id, key_secret_name
from ..statemachine import get_encryption_config_and_state
from ..utils.conditions import update_condition
from ..utils.errors import is_conflict, new_aggregate, sanitize_exception
from ..utils.events import EventRecorder
from ..utils.rate_limit import rate_limit_k8s
from .base import TRANSITION_REQUEUE, BaseController

ANNOTATE_RETRIES = 5


def write_keys_match(desired: EncryptionState, current: EncryptionState) -> tuple[bool, str]:
    """Check that every API server writes with the desired write key.

    Returns:
        Tuple of (match, reason of the first mismatch)
    """
    for gr in sorted(desired, key=str):
        want = desired[gr].write_key
        have = current[gr].write_key if gr in current else None
        if want is None and have is None:
            continue
        if want is None or have is None or not equal_key_and_equal_id(want, have):
            want_id = want.generation if want else None
            have_id = have.generation if have else None
            return False, f"write key of {gr} is {have_id}, waiting for {want_id} to be deployed"
    return True, ""


class MigrationController(BaseController):
    """Migrates every encrypted resource to the deployed write key and records completion."""

    degraded_condition = COND_MIGRATION_CONTROLLER_DEGRADED

    def __init__(
        self,
        component: str,
        operator_client: OperatorClient,
        event_recorder: EventRecorder,
        deployer: Deployer,
        migrator: Migrator,
        provider: Provider,
        precondition: PreconditionChecker,
        core_api: client.CoreV1Api,
    ):
        super().__init__("EncryptionMigrationController", operator_client, event_recorder)
        self.component = component
        self.deployer = deployer
        self.migrator = migrator
        self.provider = provider
        self.precondition = precondition
        self.core_api = core_api

    def sync(self) -> float | None:
        if not should_run_encryption_controllers(self.operator_client, self.precondition, self.provider):
            self.set_progressing(False, "AsExpected", "")
            return None

        encrypted_grs = self.provider.encrypted_grs()
        current_config, desired_state, key_secrets, transitioning = get_encryption_config_and_state(
            self.deployer, self.core_api, self.component, encrypted_grs
        )
        if transitioning:
            self.log_info(f"Waiting for API servers: {transitioning}", reason=transitioning)
            return TRANSITION_REQUEUE

        current_state = encryptionconfig.to_encryption_state(current_config, key_secrets)
        match, reason = write_keys_match(desired_state, current_state)
        if not match:
            self.log_info(reason, reason="WriteKeyNotDeployed")
            return None

        errors: list[Exception | None] = []
        pending = [gr for gr in encrypted_grs if self._needs_migration(gr, desired_state)]
        if pending:
            self.set_progressing(True, "Migrating", f"migrating {', '.join(str(gr) for gr in pending)}")
        for gr in pending:
            errors.append(self.migrate_resource(gr, desired_state[gr].write_key))

        self.set_progressing(False, "AsExpected", "")
        err = new_aggregate(errors)
        if err is not None:
            raise err
        return None

    @staticmethod
    def _needs_migration(gr: GroupResource, desired_state: EncryptionState) -> bool:
        grs = desired_state.get(gr)
        if grs is None or grs.write_key is None or not grs.write_key.backed:
            return False
        return not has_resource(grs.write_key.migrated, gr)

    def migrate_resource(self, gr: GroupResource, write_key: KeyState) -> Exception | None:
        """Migrate one resource and record it on the write key's secret.

        Returns:
            The error, or None on success
        """
        self.event_recorder.eventf(
            EVENT_REASON_MIGRATION_STARTED, "Started migration of %s to key %d", str(gr), write_key.generation
        )
        try:
            self.migrator.ensure_content_migrated(gr)
            self.mark_migrated(write_key.generation, gr)
        except Exception as e:
            self.log_error(f"Migration of {gr} failed", error=e, resource=str(gr))
            self.event_recorder.warningf(
                EVENT_REASON_MIGRATION_FAILED,
                "Migration of %s to key %d failed: %s",
                str(gr),
                write_key.generation,
                sanitize_exception(e),
            )
            return e

        self.event_recorder.eventf(
            EVENT_REASON_MIGRATION_FINISHED, "Migration of %s to key %d finished", str(gr), write_key.generation
        )
        self.log_info(f"Migrated {gr} to key {write_key.generation}", event="migrated", reason="Migrated")
        return None

    @rate_limit_k8s
    def _read_secret(self, name: str) -> client.V1Secret:
        return self.core_api.read_namespaced_secret(name=name, namespace=MANAGED_NAMESPACE)

    @rate_limit_k8s
    def _replace_secret(self, secret: client.V1Secret) -> client.V1Secret:
        return self.core_api.replace_namespaced_secret(
            name=secret.metadata.name, namespace=MANAGED_NAMESPACE, body=secret
        )

    def mark_migrated(self, generation: int, gr: GroupResource, now: datetime | None = None) -> None:
        """Add gr to the migrated resources of a key secret.

        Raises:
            ApiException: If the update fails or keeps conflicting
            InvalidKeySecretError: If the secret no longer decodes
        """
        name = key_secret_name(self.component, generation)
        for attempt in range(ANNOTATE_RETRIES):
            secret = self._read_secret(name)
            migrated = to_key_state(secret).migrated
            if has_resource(migrated, gr):
                return
            migrated.resources.append(gr)
            migrated.timestamp = now or datetime.now(timezone.utc)
            set_migrated(secret, migrated)
            try:
                self._replace_secret(secret)
                return
            except client.exceptions.ApiException as e:
                if is_conflict(e) and attempt < ANNOTATE_RETRIES - 1:
                    continue
                raise

    def set_progressing(self, progressing: bool, reason: str, message: str) -> None:
        def update(status: dict[str, Any]) -> None:
            conditions = status.setdefault("conditions", [])
            update_condition(
                conditions,
                COND_MIGRATION_CONTROLLER_PROGRESSING,
                "True" if progressing else "False",
                reason,
                message,
            )

        try:
            self.operator_client.update_status(update)
        except client.exceptions.ApiException as e:
            self.log_error("Failed to update progressing condition", error=e)
