"""Main entry point for the Encryption Operator."""

from __future__ import annotations

import logging
import threading
from typing import Any

import kopf
from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from werkzeug.serving import make_server

from . import health
from . import logging as structured_logging
from . import tracing
from .config import OperatorConfig
from .runner import Controllers, build_controllers
from .utils.errors import sanitize_exception

logger = logging.getLogger(__name__)

_controllers: Controllers | None = None


def load_kube_config() -> None:
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def operator_object_reference(custom_api: client.CustomObjectsApi, cfg: OperatorConfig) -> dict[str, Any]:
    """Build the reference events are posted for, with the uid when the object is readable."""
    reference: dict[str, Any] = {
        "apiVersion": f"{cfg.operator_group}/{cfg.operator_version}",
        "kind": "OpenShiftAPIServer",
        "metadata": {"name": cfg.operator_name, "namespace": cfg.operator_namespace},
    }
    try:
        obj = custom_api.get_cluster_custom_object(
            group=cfg.operator_group,
            version=cfg.operator_version,
            plural=cfg.operator_plural,
            name=cfg.operator_name,
        )
    except client.exceptions.ApiException as e:
        logger.warning(f"Operator object not readable, posting events without uid: {sanitize_exception(e)}")
        return reference
    reference["kind"] = obj.get("kind", reference["kind"])
    reference["metadata"]["uid"] = (obj.get("metadata") or {}).get("uid")
    return reference


def start_metrics_server(port: int, controllers: Controllers) -> None:
    combined_app = health.create_combined_wsgi_app(
        liveness_fn=controllers.healthy,
        readiness_fn=controllers.ready,
        liveness_detail_fn=lambda: controllers.restart_reason,
    )
    server = make_server("", port, combined_app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator and start the encryption controllers."""
    global _controllers

    # Set up structured JSON logging
    structured_logging.setup_structured_logging()

    settings.posting.level = 0
    settings.networking.request_timeout = 30.0
    settings.execution.max_workers = 4

    cfg = OperatorConfig.from_env()
    tracing.initialize_tracing(cfg.component)
    load_kube_config()

    core_api = client.CoreV1Api()
    apps_api = client.AppsV1Api()
    custom_api = client.CustomObjectsApi()
    dynamic_client = DynamicClient(client.ApiClient())

    _controllers = build_controllers(
        cfg,
        core_api,
        apps_api,
        custom_api,
        dynamic_client,
        operator_object_reference(custom_api, cfg),
    )

    # Start metrics HTTP server with health check endpoints
    start_metrics_server(cfg.metrics_port, _controllers)

    _controllers.run()
    logger.info(f"Encryption controllers for {cfg.component} started")


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    """Stop the controllers; syncs in flight are allowed to finish."""
    global _controllers
    if _controllers is None:
        return
    _controllers.stop()
    _controllers = None
