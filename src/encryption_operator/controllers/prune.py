"""Controller deleting key secrets no configuration needs anymore."""

from __future__ import annotations

from kubernetes import client

from .. import encryptionconfig, metrics
from ..constants import COND_PRUNE_CONTROLLER_DEGRADED, EVENT_REASON_KEYS_PRUNED, FINALIZER, MANAGED_NAMESPACE
from ..deployer import Deployer
from ..encryptionconfig import EncryptionState
from ..operatorclient import OperatorClient
from ..preconditions import PreconditionChecker, should_run_encryption_controllers
from ..provider import Provider
from ..state import name_to_key_id
from ..statemachine import get_encryption_config_and_state
from ..utils.errors import filter_out, is_not_found, new_aggregate
from ..utils.events import EventRecorder
from ..utils.rate_limit import rate_limit_k8s
from .base import TRANSITION_REQUEUE, BaseController

DEFAULT_KEYS_TO_KEEP = 5


def used_generations(*states: EncryptionState) -> set[int]:
    return {k.generation for state in states for grs in state.values() for k in grs.keys()}


def secrets_to_prune(
    key_secrets: list[client.V1Secret],
    used: set[int],
    keep: int,
) -> list[client.V1Secret]:
    """Select unused key secrets beyond the newest ``keep`` unused ones.

    Secrets whose name carries no valid generation are never selected.
    """
    unused = []
    for secret in key_secrets:
        generation = name_to_key_id(secret.metadata.name or "")
        if generation is None or generation in used:
            continue
        unused.append((generation, secret))
    unused.sort(key=lambda item: item[0], reverse=True)
    return [secret for _, secret in unused[keep:]]


class PruneController(BaseController):
    """Keeps the number of retired key secrets bounded."""

    degraded_condition = COND_PRUNE_CONTROLLER_DEGRADED

    def __init__(
        self,
        component: str,
        operator_client: OperatorClient,
        event_recorder: EventRecorder,
        deployer: Deployer,
        provider: Provider,
        precondition: PreconditionChecker,
        core_api: client.CoreV1Api,
        keys_to_keep: int = DEFAULT_KEYS_TO_KEEP,
    ):
        super().__init__("EncryptionPruneController", operator_client, event_recorder)
        self.component = component
        self.deployer = deployer
        self.provider = provider
        self.precondition = precondition
        self.core_api = core_api
        self.keys_to_keep = keys_to_keep

    def sync(self) -> float | None:
        if not should_run_encryption_controllers(self.operator_client, self.precondition, self.provider):
            return None

        current_config, desired_state, key_secrets, transitioning = get_encryption_config_and_state(
            self.deployer, self.core_api, self.component, self.provider.encrypted_grs()
        )
        if transitioning:
            self.log_info(f"Waiting for API servers: {transitioning}", reason=transitioning)
            return TRANSITION_REQUEUE

        # keys of the running config stay until a config without them is deployed
        current_state = encryptionconfig.to_encryption_state(current_config, key_secrets)
        used = used_generations(desired_state, current_state)

        to_delete = secrets_to_prune(key_secrets, used, self.keys_to_keep)
        if not to_delete:
            return None

        errors: list[Exception | None] = []
        deleted = []
        for secret in to_delete:
            try:
                self.delete_key_secret(secret)
                deleted.append(secret.metadata.name)
            except client.exceptions.ApiException as e:
                errors.append(e)

        if deleted:
            metrics.keys_pruned_total.inc(len(deleted))
            self.event_recorder.eventf(
                EVENT_REASON_KEYS_PRUNED, "Deleted unused encryption keys: %s", ", ".join(deleted)
            )
            self.log_info(f"Pruned {len(deleted)} key secrets", event="pruned", reason=EVENT_REASON_KEYS_PRUNED)

        err = filter_out(new_aggregate(errors), is_not_found)
        if err is not None:
            raise err
        return None

    @rate_limit_k8s
    def _replace_secret(self, secret: client.V1Secret) -> client.V1Secret:
        return self.core_api.replace_namespaced_secret(
            name=secret.metadata.name, namespace=MANAGED_NAMESPACE, body=secret
        )

    @rate_limit_k8s
    def _delete_secret(self, name: str) -> None:
        self.core_api.delete_namespaced_secret(name=name, namespace=MANAGED_NAMESPACE)

    def delete_key_secret(self, secret: client.V1Secret) -> None:
        """Drop our finalizer, then delete the secret.

        Raises:
            ApiException: If either call fails
        """
        finalizers = list(secret.metadata.finalizers or [])
        if FINALIZER in finalizers:
            secret.metadata.finalizers = [f for f in finalizers if f != FINALIZER]
            self._replace_secret(secret)
        self._delete_secret(secret.metadata.name)
