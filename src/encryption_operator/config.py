"""Operator configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .controllers.prune import DEFAULT_KEYS_TO_KEEP


def _split(value: str, sep: str) -> list[str]:
    return [part.strip() for part in value.split(sep) if part.strip()]


@dataclass
class OperatorConfig:
    """Settings of one operator process.

    Environment Variables:
        OPERATOR_COMPONENT: Component whose API servers are encrypted (default: openshift-apiserver)
        OPERATOR_TARGET_NAMESPACE: Namespace of the API server pods (default: openshift-apiserver)
        OPERATOR_NAMESPACE: Namespace the operator runs in (default: openshift-apiserver-operator)
        OPERATOR_RESOURCE_GROUP/_VERSION/_PLURAL/_NAME: Operator custom resource
        ENCRYPTED_RESOURCES: Comma separated group resources (default: secrets,configmaps)
        ENCRYPTION_KEYS_TO_KEEP: Unused key secrets kept around (default: 5)
        REVISION_LABEL: Pod label carrying the revision (default: revision)
        MASTER_NODE_NAMES: Comma separated node names; nodes are discovered when empty
        UNSUPPORTED_CONFIG_PREFIX: Dot separated path into unsupportedConfigOverrides
        METRICS_PORT: Port of the metrics and health server (default: 8080)
    """

    component: str = "openshift-apiserver"
    target_namespace: str = "openshift-apiserver"
    operator_namespace: str = "openshift-apiserver-operator"
    operator_group: str = "operator.openshift.io"
    operator_version: str = "v1"
    operator_plural: str = "openshiftapiservers"
    operator_name: str = "cluster"
    encrypted_resources: str = "secrets,configmaps"
    keys_to_keep: int = DEFAULT_KEYS_TO_KEEP
    revision_label: str = "revision"
    master_node_names: list[str] = field(default_factory=list)
    unsupported_config_prefix: list[str] = field(default_factory=list)
    metrics_port: int = 8080

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Build the configuration from environment variables.

        Raises:
            ValueError: If a numeric variable is not a number
        """
        return cls(
            component=os.getenv("OPERATOR_COMPONENT", "openshift-apiserver"),
            target_namespace=os.getenv("OPERATOR_TARGET_NAMESPACE", "openshift-apiserver"),
            operator_namespace=os.getenv("OPERATOR_NAMESPACE", "openshift-apiserver-operator"),
            operator_group=os.getenv("OPERATOR_RESOURCE_GROUP", "operator.openshift.io"),
            operator_version=os.getenv("OPERATOR_RESOURCE_VERSION", "v1"),
            operator_plural=os.getenv("OPERATOR_RESOURCE_PLURAL", "openshiftapiservers"),
            operator_name=os.getenv("OPERATOR_RESOURCE_NAME", "cluster"),
            encrypted_resources=os.getenv("ENCRYPTED_RESOURCES", "secrets,configmaps"),
            keys_to_keep=int(os.getenv("ENCRYPTION_KEYS_TO_KEEP", str(DEFAULT_KEYS_TO_KEEP))),
            revision_label=os.getenv("REVISION_LABEL", "revision"),
            master_node_names=_split(os.getenv("MASTER_NODE_NAMES", ""), ","),
            unsupported_config_prefix=_split(os.getenv("UNSUPPORTED_CONFIG_PREFIX", ""), "."),
            metrics_port=int(os.getenv("METRICS_PORT", "8080")),
        )
