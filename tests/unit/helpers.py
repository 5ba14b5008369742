"""Builders for Kubernetes objects and fakes used across the unit tests."""

from __future__ import annotations

import base64
import copy
from datetime import datetime
from typing import Any
from unittest.mock import MagicMock

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from encryption_operator import encryptionconfig
from encryption_operator.constants import MANAGED_NAMESPACE
from encryption_operator.secrets import from_key_state
from encryption_operator.state import AESCBC, GroupResource, Key, KeyState, MigratedState

COMPONENT = "openshift-apiserver"
SECRETS = GroupResource("", "secrets")
CONFIGMAPS = GroupResource("", "configmaps")
GRS = [CONFIGMAPS, SECRETS]

KMS_CONFIG = {"type": "AWS", "aws": {"keyARN": "arn:aws:kms:us-east-1:123456789012:key/abc", "region": "us-east-1"}}


def key_material(generation: int) -> str:
    return base64.b64encode(bytes([generation]) * 32).decode("ascii")


def make_key_state(
    generation: int,
    mode: str = AESCBC,
    migrated: list[GroupResource] | None = None,
    timestamp: datetime | None = None,
    external_reason: str = "",
) -> KeyState:
    return KeyState(
        generation=generation,
        mode=mode,
        key=Key(name=str(generation), secret=key_material(generation)),
        migrated=MigratedState(timestamp=timestamp, resources=list(migrated or [])),
        external_reason=external_reason,
    )


def make_key_secret(generation: int, mode: str = AESCBC, **kwargs: Any) -> client.V1Secret:
    secret = from_key_state(COMPONENT, make_key_state(generation, mode, **kwargs))
    secret.metadata.resource_version = "1"
    return secret


def make_config_secret(state: dict, name: str = "encryption-config-1", namespace: str = COMPONENT) -> client.V1Secret:
    config = encryptionconfig.from_encryption_state(state)
    return encryptionconfig.to_secret(namespace, name, config)


def make_pod(
    name: str,
    node: str,
    revision: str,
    phase: str = "Running",
    ready: bool = True,
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, labels={"apiserver": "true", "revision": revision}),
        spec=client.V1PodSpec(node_name=node, containers=[]),
        status=client.V1PodStatus(
            phase=phase,
            conditions=[client.V1PodCondition(type="Ready", status="True" if ready else "False")],
        ),
    )


def secret_list(*secrets: client.V1Secret) -> MagicMock:
    return MagicMock(items=list(secrets))


def api_exception(status: int, reason: str = "") -> ApiException:
    return ApiException(status=status, reason=reason)


class FakeOperatorClient:
    """In-memory OperatorClient."""

    def __init__(self, spec: dict[str, Any] | None = None, status: dict[str, Any] | None = None):
        self.spec = spec if spec is not None else {"managementState": "Managed"}
        self.status = status if status is not None else {}
        self.updates = 0

    def get_operator_state(self) -> tuple[dict[str, Any], dict[str, Any], str]:
        return copy.deepcopy(self.spec), copy.deepcopy(self.status), "1"

    def update_status(self, update_fn: Any) -> dict[str, Any]:
        status = copy.deepcopy(self.status)
        update_fn(status)
        if status != self.status:
            self.updates += 1
            self.status = status
        return status

    def condition(self, condition_type: str) -> dict[str, Any] | None:
        for cond in self.status.get("conditions", []):
            if cond["type"] == condition_type:
                return cond
        return None


class FakeDeployer:
    """Deployer reporting a fixed config secret."""

    def __init__(self, secret: client.V1Secret | None = None, converged: bool = True):
        self.secret = secret
        self.converged = converged

    def deployed_encryption_config_secret(self) -> tuple[client.V1Secret | None, bool]:
        return self.secret, self.converged

    def add_event_handler(self, handler: Any) -> None:
        return None

    def has_synced(self) -> bool:
        return True


def fake_precondition(fulfilled: bool = True, synced: bool = True) -> MagicMock:
    precondition = MagicMock()
    precondition.precondition_fulfilled.return_value = fulfilled
    precondition.caches_synced.return_value = synced
    return precondition


def fake_provider(grs: list[GroupResource] | None = None, enabled: bool = True) -> MagicMock:
    provider = MagicMock()
    provider.encrypted_grs.return_value = list(grs if grs is not None else GRS)
    provider.should_run_encryption_controllers.return_value = enabled
    return provider


def core_api_with_secrets(*secrets: client.V1Secret) -> MagicMock:
    core_api = MagicMock()
    core_api.list_namespaced_secret.return_value = secret_list(*secrets)
    return core_api


def managed(secret: client.V1Secret) -> client.V1Secret:
    secret.metadata.namespace = MANAGED_NAMESPACE
    return secret
