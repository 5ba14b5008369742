"""Controller projecting the desired key state into the component's encryption config secret."""

from __future__ import annotations

from typing import Any

from kubernetes import client

from .. import encryptionconfig, metrics
from ..constants import (
    ANNOTATION_DESCRIPTION,
    COND_STATE_CONTROLLER_DEGRADED,
    DESCRIPTION_WARNING,
    EVENT_REASON_CONFIG_CREATED,
    EVENT_REASON_CONFIG_UPDATED,
    FINALIZER,
    MANAGED_NAMESPACE,
)
from ..deployer import Deployer
from ..encryptionconfig import EncryptionState
from ..operatorclient import OperatorClient
from ..preconditions import PreconditionChecker, should_run_encryption_controllers
from ..provider import Provider
from ..statemachine import get_encryption_config_and_state
from ..utils.errors import InvalidEncryptionConfigError, is_conflict, is_not_found
from ..utils.events import EventRecorder
from ..utils.rate_limit import rate_limit_k8s
from .base import TRANSITION_REQUEUE, BaseController

APPLY_RETRIES = 5


def _decoded_config(secret: client.V1Secret) -> Any:
    try:
        return encryptionconfig.from_secret(secret)
    except InvalidEncryptionConfigError:
        return None


class StateController(BaseController):
    """Writes ``encryption-config-<component>`` for the revision controller to roll out."""

    degraded_condition = COND_STATE_CONTROLLER_DEGRADED

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
        super().__init__("EncryptionStateController", operator_client, event_recorder)
        self.component = component
        self.deployer = deployer
        self.provider = provider
        self.precondition = precondition
        self.core_api = core_api

    @property
    def config_secret_name(self) -> str:
        return encryptionconfig.config_secret_name(self.component)

    def sync(self) -> float | None:
        if not should_run_encryption_controllers(self.operator_client, self.precondition, self.provider):
            return None

        _, desired_state, _, transitioning = get_encryption_config_and_state(
            self.deployer, self.core_api, self.component, self.provider.encrypted_grs()
        )
        if transitioning:
            self.log_info(f"Waiting for API servers: {transitioning}", reason=transitioning)
            return TRANSITION_REQUEUE

        # no keys at all yet, nothing worth deploying
        if not any(grs.keys() for grs in desired_state.values()):
            return None

        self.apply_encryption_config(desired_state)
        return None

    def build_secret(self, desired_state: EncryptionState) -> client.V1Secret:
        config = encryptionconfig.from_encryption_state(desired_state)
        secret = encryptionconfig.to_secret(MANAGED_NAMESPACE, self.config_secret_name, config)
        secret.metadata.annotations = {ANNOTATION_DESCRIPTION: DESCRIPTION_WARNING}
        secret.metadata.finalizers = [FINALIZER]
        return secret

    @rate_limit_k8s
    def _read(self) -> client.V1Secret:
        return self.core_api.read_namespaced_secret(name=self.config_secret_name, namespace=MANAGED_NAMESPACE)

    @rate_limit_k8s
    def _create(self, secret: client.V1Secret) -> client.V1Secret:
        return self.core_api.create_namespaced_secret(namespace=MANAGED_NAMESPACE, body=secret)

    @rate_limit_k8s
    def _replace(self, secret: client.V1Secret) -> client.V1Secret:
        return self.core_api.replace_namespaced_secret(
            name=self.config_secret_name, namespace=MANAGED_NAMESPACE, body=secret
        )

    def apply_encryption_config(self, desired_state: EncryptionState) -> bool:
        """Create or update the config secret.

        Returns:
            True when the secret was written

        Raises:
            ApiException: If the write fails or keeps conflicting
        """
        desired = self.build_secret(desired_state)
        desired_config = encryptionconfig.from_secret(desired)

        for attempt in range(APPLY_RETRIES):
            try:
                existing = self._read()
            except client.exceptions.ApiException as e:
                if not is_not_found(e):
                    raise
                existing = None

            try:
                if existing is None:
                    self._create(desired)
                    self._record_write(EVENT_REASON_CONFIG_CREATED, "created")
                    return True

                if _decoded_config(existing) == desired_config:
                    return False

                existing.data = desired.data
                existing.type = desired.type
                existing.metadata.annotations = {
                    **(existing.metadata.annotations or {}),
                    **desired.metadata.annotations,
                }
                finalizers = list(existing.metadata.finalizers or [])
                if FINALIZER not in finalizers:
                    finalizers.append(FINALIZER)
                existing.metadata.finalizers = finalizers
                # resourceVersion is kept, so a concurrent write fails with a conflict
                self._replace(existing)
                self._record_write(EVENT_REASON_CONFIG_UPDATED, "updated")
                return True
            except client.exceptions.ApiException as e:
                if is_conflict(e) and attempt < APPLY_RETRIES - 1:
                    self.log_info(f"Conflict writing {self.config_secret_name}, retrying", reason="Conflict")
                    continue
                metrics.api_call_total.labels(
                    api_type="kubernetes", operation="apply_encryption_config", result="error"
                ).inc()
                raise
        return False

    def _record_write(self, reason: str, verb: str) -> None:
        metrics.api_call_total.labels(
            api_type="kubernetes", operation="apply_encryption_config", result="success"
        ).inc()
        self.event_recorder.eventf(
            reason, "Encryption config secret %s/%s %s", MANAGED_NAMESPACE, self.config_secret_name, verb
        )
        self.log_info(f"Encryption config secret {self.config_secret_name} {verb}", event=verb, reason=reason)
