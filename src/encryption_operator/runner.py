"""Wiring and lifecycle of the encryption controllers."""

from __future__ import annotations

import contextvars
import logging
import threading
from typing import Any, Callable

from kubernetes import client
from kubernetes.dynamic import DynamicClient

from .config import OperatorConfig
from .constants import APISERVER_PLURAL, CONFIG_API_GROUP, CONFIG_API_VERSION, MANAGED_NAMESPACE
from .controllers import (
    BaseController,
    ConditionController,
    KeyController,
    MigrationController,
    PruneController,
    StateController,
)
from .deployer import (
    APISERVER_POD_SELECTOR,
    DeploymentNodeProvider,
    MasterNodeProvider,
    RevisionLabelPodDeployer,
    StaticNodeProvider,
)
from .informers import Informer, InformerSet
from .migrator import InProcessMigrator
from .operatorclient import CustomObjectOperatorClient
from .preconditions import PreconditionChecker
from .provider import StaticProvider
from .utils.events import KopfEventRecorder

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30.0


def in_fresh_context(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Bind fn to a copy of the current context, e.g. for kopf event posting in threads."""
    ctx = contextvars.copy_context()

    def run(*args: Any) -> Any:
        return ctx.run(fn, *args)

    return run


class Controllers:
    """The encryption controllers and the informers feeding them."""

    def __init__(self, controllers: list[BaseController], informers: InformerSet):
        self.controllers = controllers
        self.informers = informers
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._restart_reason: str | None = None
        self._lock = threading.Lock()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Start the informers and one worker thread per controller. Does not block."""
        if stop_event is not None:
            self.stop_event = stop_event
        self.informers.start(self.stop_event, run_in_context=in_fresh_context)

        for controller in self.controllers:
            thread = threading.Thread(
                target=in_fresh_context(self._run_controller),
                args=(controller,),
                name=f"controller-{controller.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self.controllers)} encryption controllers")

    def _run_controller(self, controller: BaseController) -> None:
        try:
            controller.run(self.stop_event)
        except Exception as e:
            logger.exception(f"Controller {controller.name} crashed")
            self.request_restart(f"controller {controller.name} crashed: {e}")

    def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop taking new work; running syncs finish first."""
        self.stop_event.set()
        self.informers.stop()
        for controller in self.controllers:
            controller.shut_down()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop within {timeout}s")
        logger.info("Encryption controllers stopped")

    def request_restart(self, reason: str) -> None:
        """Ask the supervisor for a restart by failing the liveness check."""
        with self._lock:
            if self._restart_reason is None:
                self._restart_reason = reason
        logger.warning(f"Restart requested: {reason}")

    @property
    def restart_reason(self) -> str | None:
        with self._lock:
            return self._restart_reason

    def healthy(self) -> bool:
        return self.restart_reason is None

    def ready(self) -> bool:
        return self.informers.has_synced()


def build_informers(
    cfg: OperatorConfig,
    core_api: client.CoreV1Api,
    apps_api: client.AppsV1Api,
    custom_api: client.CustomObjectsApi,
) -> InformerSet:
    informers = InformerSet()
    informers.add(
        "apiservers",
        Informer(
            "apiservers",
            custom_api.list_cluster_custom_object,
            group=CONFIG_API_GROUP,
            version=CONFIG_API_VERSION,
            plural=APISERVER_PLURAL,
        ),
    )
    informers.add(
        "operator",
        Informer(
            cfg.operator_plural,
            custom_api.list_cluster_custom_object,
            group=cfg.operator_group,
            version=cfg.operator_version,
            plural=cfg.operator_plural,
        ),
    )
    informers.add(
        "managed-secrets",
        Informer(f"secrets/{MANAGED_NAMESPACE}", core_api.list_namespaced_secret, namespace=MANAGED_NAMESPACE),
    )
    informers.add(
        "target-secrets",
        Informer(
            f"secrets/{cfg.target_namespace}", core_api.list_namespaced_secret, namespace=cfg.target_namespace
        ),
    )
    informers.add(
        "target-pods",
        Informer(
            f"pods/{cfg.target_namespace}",
            core_api.list_namespaced_pod,
            namespace=cfg.target_namespace,
            label_selector=APISERVER_POD_SELECTOR,
        ),
    )
    if not cfg.master_node_names:
        informers.add(
            "deployments",
            Informer(
                f"deployments/{cfg.target_namespace}",
                apps_api.list_namespaced_deployment,
                namespace=cfg.target_namespace,
            ),
        )
        informers.add("nodes", Informer("nodes", core_api.list_node))
    return informers


def build_controllers(
    cfg: OperatorConfig,
    core_api: client.CoreV1Api,
    apps_api: client.AppsV1Api,
    custom_api: client.CustomObjectsApi,
    dynamic_client: DynamicClient,
    involved_object: dict[str, Any],
) -> Controllers:
    """Create the five encryption controllers sharing one set of informers.

    Args:
        cfg: Operator configuration
        core_api: Kubernetes CoreV1Api instance
        apps_api: Kubernetes AppsV1Api instance
        custom_api: Kubernetes CustomObjectsApi instance
        dynamic_client: Dynamic client used for migrations
        involved_object: Object reference events are posted for

    Returns:
        Controllers ready to run
    """
    informers = build_informers(cfg, core_api, apps_api, custom_api)

    node_provider: MasterNodeProvider
    if cfg.master_node_names:
        node_provider = StaticNodeProvider(cfg.master_node_names)
    else:
        node_provider = DeploymentNodeProvider(cfg.target_namespace, informers["deployments"], informers["nodes"])

    deployer = RevisionLabelPodDeployer(
        cfg.revision_label,
        cfg.target_namespace,
        core_api,
        node_provider,
        informers["target-pods"],
        informers["target-secrets"],
    )
    provider = StaticProvider.from_string(cfg.encrypted_resources)
    precondition = PreconditionChecker(cfg.component, informers["apiservers"], informers["managed-secrets"])
    operator_client = CustomObjectOperatorClient(
        custom_api, cfg.operator_group, cfg.operator_version, cfg.operator_plural, cfg.operator_name
    )
    migrator = InProcessMigrator(dynamic_client)
    recorder = KopfEventRecorder(involved_object, component=cfg.component)

    shared = dict(operator_client=operator_client, provider=provider, precondition=precondition, core_api=core_api)
    migration_controller = MigrationController(
        cfg.component,
        event_recorder=recorder.with_component_suffix("encryption-migration-controller"),
        deployer=deployer,
        migrator=migrator,
        **shared,
    )
    controllers: list[BaseController] = [
        KeyController(
            cfg.component,
            cfg.unsupported_config_prefix,
            event_recorder=recorder.with_component_suffix("encryption-key-controller"),
            apiserver_informer=informers["apiservers"],
            deployer=deployer,
            **shared,
        ),
        StateController(
            cfg.component,
            event_recorder=recorder.with_component_suffix("encryption-state-controller"),
            deployer=deployer,
            **shared,
        ),
        migration_controller,
        PruneController(
            cfg.component,
            event_recorder=recorder.with_component_suffix("encryption-prune-controller"),
            deployer=deployer,
            keys_to_keep=cfg.keys_to_keep,
            **shared,
        ),
        ConditionController(
            cfg.component,
            event_recorder=recorder.with_component_suffix("encryption-condition-controller"),
            deployer=deployer,
            **shared,
        ),
    ]

    for controller in controllers:
        controller.watch(
            informers["managed-secrets"],
            informers["apiservers"],
            informers["operator"],
            deployer,
        )
    migration_controller.watch(migrator)

    return Controllers(controllers, informers)
