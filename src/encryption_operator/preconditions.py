"""Gates deciding whether the encryption controllers should act at all."""

from __future__ import annotations

import logging
from typing import Any

from .constants import APISERVER_NAME, MANAGED_NAMESPACE
from .encryptionconfig import config_secret_name
from .informers import Informer
from .operatorclient import MANAGED, OperatorClient, management_state
from .provider import Provider
from .secrets import owned_by_component
from .state import IDENTITY

logger = logging.getLogger(__name__)


def encryption_mode_of(apiserver: dict[str, Any] | None) -> str:
    """Return the raw ``spec.encryption.type`` of an APIServer config object."""
    if not apiserver:
        return ""
    return ((apiserver.get("spec") or {}).get("encryption") or {}).get("type") or ""


class PreconditionChecker:
    """Tells whether encryption has ever been enabled for a component.

    All reads are served from informer caches.
    """

    def __init__(self, component: str, apiserver_informer: Informer, managed_secret_informer: Informer):
        self.component = component
        self.apiserver_informer = apiserver_informer
        self.managed_secret_informer = managed_secret_informer

    def caches_synced(self) -> bool:
        return self.apiserver_informer.has_synced() and self.managed_secret_informer.has_synced()

    def precondition_fulfilled(self) -> bool:
        # fail open so controllers can report unsynced caches themselves
        if not self.caches_synced():
            return True
        return self.encryption_was_enabled()

    def encryption_was_enabled(self) -> bool:
        apiserver = self.apiserver_informer.get(APISERVER_NAME)
        if apiserver is None:
            return False

        if encryption_mode_of(apiserver) not in ("", IDENTITY):
            return True

        if self.managed_secret_informer.get(config_secret_name(self.component), MANAGED_NAMESPACE) is not None:
            return True

        return any(owned_by_component(s, self.component) for s in self.managed_secret_informer.list())


def should_run_encryption_controllers(
    operator_client: OperatorClient,
    precondition: PreconditionChecker,
    provider: Provider,
) -> bool:
    """Return True when the operator is Managed, encryption is wanted and the provider agrees."""
    spec, _, _ = operator_client.get_operator_state()
    if management_state(spec) != MANAGED:
        return False
    if not provider.should_run_encryption_controllers():
        return False
    return precondition.precondition_fulfilled()
