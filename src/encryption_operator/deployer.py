"""Detection of the encryption config revision all API server replicas run."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from kubernetes import client

from .encryptionconfig import revisioned_secret_name
from .informers import EventHandler, Informer, matches_labels
from .utils.errors import RevisionError, is_not_found
from .utils.rate_limit import rate_limit_k8s

logger = logging.getLogger(__name__)

APISERVER_POD_SELECTOR = "apiserver=true"


class Deployer(Protocol):
    """Reports the encryption config deployed to every API server replica."""

    def deployed_encryption_config_secret(self) -> tuple[client.V1Secret | None, bool]:
        """Return (config secret, converged).

        The secret is None with converged=True when the converged revision has
        no encryption config. While replicas still progress, returns (None, False).
        """
        ...

    def add_event_handler(self, handler: EventHandler) -> None:
        ...

    def has_synced(self) -> bool:
        ...


class MasterNodeProvider(Protocol):
    """Provides the nodes expected to run API server pods."""

    def master_node_names(self) -> list[str]:
        ...

    def add_event_handler(self, handler: EventHandler) -> list[Any]:
        """Register handler and return the has_synced callables of the backing informers."""
        ...


class StaticNodeProvider:
    """MasterNodeProvider with a fixed list of node names."""

    def __init__(self, node_names: list[str]):
        self.node_names = list(node_names)

    def master_node_names(self) -> list[str]:
        return list(self.node_names)

    def add_event_handler(self, handler: EventHandler) -> list[Any]:
        return []


class DeploymentNodeProvider:
    """Returns the nodes matching the node selector of the ``apiserver`` deployment."""

    def __init__(self, target_namespace: str, deployment_informer: Informer, node_informer: Informer):
        self.target_namespace = target_namespace
        self.deployment_informer = deployment_informer
        self.node_informer = node_informer

    def master_node_names(self) -> list[str]:
        deploy = self.deployment_informer.get("apiserver", self.target_namespace)
        if deploy is None:
            return []
        node_selector = deploy.spec.template.spec.node_selector or {}
        return sorted(n.metadata.name for n in self.node_informer.list() if matches_labels(n, node_selector))

    def add_event_handler(self, handler: EventHandler) -> list[Any]:
        self.deployment_informer.add_event_handler(handler)

        def node_handler(event_type: str, obj: Any) -> None:
            # node names cannot change, so updates never influence the result
            if event_type == "MODIFIED":
                return
            handler(event_type, obj)

        self.node_informer.add_event_handler(node_handler)
        return [self.deployment_informer.has_synced, self.node_informer.has_synced]


def _pod_ready(pod: client.V1Pod) -> bool:
    for cond in (pod.status.conditions or []) if pod.status else []:
        if cond.type == "Ready":
            return cond.status == "True"
    return False


def categorize_pods(pods: list[client.V1Pod]) -> tuple[list[client.V1Pod], list[client.V1Pod], bool]:
    """Split API server pods into good and bad ones.

    Returns:
        Tuple of (good pods, bad pods, progressing)

    Raises:
        RevisionError: For pods in Unknown or unexpected phases
    """
    if not pods:
        return [], [], True

    good: list[client.V1Pod] = []
    bad: list[client.V1Pod] = []
    for pod in pods:
        phase = pod.status.phase if pod.status else None
        if phase == "Running":
            if not _pod_ready(pod):
                return [], [], True
            good.append(pod)
        elif phase == "Pending":
            return [], [], True
        elif phase == "Unknown":
            raise RevisionError(f"api server pod {pod.metadata.name} in unknown phase")
        elif phase in ("Succeeded", "Failed"):
            # the API server never exits, so a succeeded pod is a failed one too
            bad.append(pod)
        else:
            raise RevisionError(f"api server pod {pod.metadata.name} has unexpected phase {phase}")
    return good, bad, False


def _revisions(revision_label: str, pods: list[client.V1Pod]) -> set[str]:
    return {(p.metadata.labels or {}).get(revision_label, "") for p in pods}


def get_apiserver_revision_of_all_instances(
    revision_label: str,
    nodes: list[str],
    pods: list[client.V1Pod],
) -> str:
    """Find the revision all API servers converged on.

    Converged means every pod is running and ready at the same revision,
    every expected node has such a pod, and no failed pod carries a newer
    revision than the running ones.

    Args:
        revision_label: Pod label holding the revision
        nodes: Nodes expected to run an API server
        pods: Live list of API server pods

    Returns:
        The converged revision, or an empty string while still progressing

    Raises:
        RevisionError: If a pod is in an unknown phase, a revision is not a
            number, or a failed pod runs a newer revision
    """
    good, bad, progressing = categorize_pods(pods)
    if progressing:
        return ""

    good_revisions = _revisions(revision_label, good)
    if len(good_revisions) != 1:
        return ""
    revision = next(iter(good_revisions)) or "0"

    good_nodes = {p.spec.node_name for p in good if p.spec}
    if any(n not in good_nodes for n in nodes):
        return ""

    try:
        revision_num = int(revision)
    except ValueError as e:
        raise RevisionError(f"api server has invalid revision: {revision}") from e

    for failed_revision in sorted(_revisions(revision_label, bad)):
        if not failed_revision:
            continue
        try:
            failed_num = int(failed_revision)
        except ValueError as e:
            raise RevisionError(f"api server has invalid failed revision: {failed_revision}") from e
        if failed_num > revision_num:
            raise RevisionError(
                f"api server has failed revision {failed_num} which is newer than running revision {revision_num}"
            )

    return revision


class RevisionLabelPodDeployer:
    """Deployer for API server pods labelled with the revision they run.

    The config of a revision is read from ``encryption-config-<revision>`` in
    the target namespace, where the revision controller copies it.
    """

    def __init__(
        self,
        revision_label: str,
        target_namespace: str,
        core_api: client.CoreV1Api,
        node_provider: MasterNodeProvider,
        pod_informer: Informer,
        secret_informer: Informer,
    ):
        self.revision_label = revision_label
        self.target_namespace = target_namespace
        self.core_api = core_api
        self.node_provider = node_provider
        self.pod_informer = pod_informer
        self.secret_informer = secret_informer
        self._cache_synced: list[Any] = []

    @rate_limit_k8s
    def _list_apiserver_pods(self) -> list[client.V1Pod]:
        pods = self.core_api.list_namespaced_pod(
            namespace=self.target_namespace,
            label_selector=APISERVER_POD_SELECTOR,
        )
        return list(pods.items or [])

    @rate_limit_k8s
    def _get_config_secret(self, revision: str) -> client.V1Secret:
        return self.core_api.read_namespaced_secret(
            name=revisioned_secret_name(revision),
            namespace=self.target_namespace,
        )

    def deployed_encryption_config_secret(self) -> tuple[client.V1Secret | None, bool]:
        nodes = self.node_provider.master_node_names()
        if not nodes:
            return None, False

        # live list, never trust a cache about the running revision
        pods = self._list_apiserver_pods()

        try:
            revision = get_apiserver_revision_of_all_instances(self.revision_label, nodes, pods)
        except RevisionError as e:
            raise RevisionError(f"failed to get converged static pod revision: {e}") from e
        if not revision:
            return None, False

        try:
            secret = self._get_config_secret(revision)
        except client.exceptions.ApiException as e:
            # encryption was not enabled at this revision or the secret was deleted
            if is_not_found(e):
                return None, True
            raise
        return secret, True

    def add_event_handler(self, handler: EventHandler) -> None:
        self.pod_informer.add_event_handler(handler)
        self.secret_informer.add_event_handler(handler)
        self._cache_synced = [
            self.pod_informer.has_synced,
            self.secret_informer.has_synced,
            *self.node_provider.add_event_handler(handler),
        ]

    def has_synced(self) -> bool:
        return all(synced() for synced in self._cache_synced)
