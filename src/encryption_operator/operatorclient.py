"""Access to the operator custom resource the controllers report status on."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Protocol

from kubernetes import client

from . import metrics
from .utils.errors import is_conflict
from .utils.rate_limit import rate_limit_k8s

logger = logging.getLogger(__name__)

MANAGED = "Managed"
UPDATE_STATUS_RETRIES = 5

StatusUpdateFn = Callable[[dict[str, Any]], None]


class OperatorClient(Protocol):
    """Reads the operator spec and updates its status."""

    def get_operator_state(self) -> tuple[dict[str, Any], dict[str, Any], str]:
        """Return (spec, status, resourceVersion) of the operator object."""
        ...

    def update_status(self, update_fn: StatusUpdateFn) -> dict[str, Any]:
        """Apply update_fn to a copy of the status and persist it when it changed."""
        ...


class CustomObjectOperatorClient:
    """OperatorClient for a cluster scoped operator custom resource."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        name: str,
    ):
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.name = name

    @rate_limit_k8s
    def _get(self) -> dict[str, Any]:
        return self.custom_api.get_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=self.name,
        )

    @rate_limit_k8s
    def _replace_status(self, body: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.replace_cluster_custom_object_status(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=self.name,
            body=body,
        )

    def get_operator_state(self) -> tuple[dict[str, Any], dict[str, Any], str]:
        obj = self._get()
        metrics.api_call_total.labels(api_type="kubernetes", operation="get_operator", result="success").inc()
        return (
            obj.get("spec") or {},
            obj.get("status") or {},
            (obj.get("metadata") or {}).get("resourceVersion", ""),
        )

    def update_status(self, update_fn: StatusUpdateFn) -> dict[str, Any]:
        """Read-modify-write the status, retrying on conflicts.

        Args:
            update_fn: Mutates the status dict in place

        Returns:
            The status after the update

        Raises:
            ApiException: If the update keeps conflicting or fails otherwise
        """
        for attempt in range(UPDATE_STATUS_RETRIES):
            obj = self._get()
            original = obj.get("status") or {}
            status = copy.deepcopy(original)
            update_fn(status)
            if status == original:
                return status

            obj["status"] = status
            try:
                self._replace_status(obj)
            except client.exceptions.ApiException as e:
                if is_conflict(e) and attempt < UPDATE_STATUS_RETRIES - 1:
                    logger.debug(f"Conflict updating {self.plural}/{self.name} status, retrying")
                    continue
                metrics.api_call_total.labels(
                    api_type="kubernetes", operation="update_operator_status", result="error"
                ).inc()
                raise
            metrics.api_call_total.labels(
                api_type="kubernetes", operation="update_operator_status", result="success"
            ).inc()
            return status
        return {}


def management_state(spec: dict[str, Any]) -> str:
    return spec.get("managementState") or MANAGED
