"""Computation of the desired encryption state shared by all controllers.

The desired state moves a cluster forward one safe step at a time:

1. a new key is first added as read key everywhere,
2. only once every API server can read it, it becomes the write key,
3. old read keys are dropped once the write key migrated the resource.

Promotion over an existing write key additionally waits until that write key
finished its own migration, otherwise data written with it could end up
readable only by a key that is about to be dropped.
"""

from __future__ import annotations

import copy
import logging

from kubernetes import client

from . import encryptionconfig
from .deployer import Deployer
from .encryptionconfig import EncryptionState
from .secrets import list_key_secrets, to_key_state
from .state import GroupResource, GroupResourceState, KeyState, migrated_for
from .utils.errors import InvalidKeySecretError

logger = logging.getLogger(__name__)

REASON_NOT_CONVERGED = "APIServerRevisionNotConverged"


def _backed_keys_newest_first(key_secrets: list[client.V1Secret]) -> list[KeyState]:
    keys: dict[int, KeyState] = {}
    for secret in key_secrets:
        try:
            ks = to_key_state(secret)
        except InvalidKeySecretError as e:
            logger.warning(f"Skipping invalid key secret: {e}")
            continue
        keys[ks.generation] = ks
    return [keys[g] for g in sorted(keys, reverse=True)]


def _sort_newest_first(keys: list[KeyState]) -> list[KeyState]:
    return sorted(keys, key=lambda k: k.generation, reverse=True)


def _write_key_migrated(gr: GroupResource, grs: GroupResourceState) -> bool:
    wk = grs.write_key
    return wk is not None and wk.backed and migrated_for([gr], wk)[0]


def get_desired_encryption_state(
    current_state: EncryptionState,
    key_secrets: list[client.V1Secret],
    encrypted_grs: list[GroupResource],
) -> EncryptionState:
    """Derive the next desired state from the deployed state and the key secrets.

    Args:
        current_state: State decoded from the deployed configuration
        key_secrets: Key secrets of the component
        encrypted_grs: Group resources to encrypt

    Returns:
        The desired state for every encrypted group resource
    """
    backed = _backed_keys_newest_first(key_secrets)

    desired: EncryptionState = {
        gr: copy.deepcopy(current_state.get(gr, GroupResourceState())) for gr in encrypted_grs
    }

    seeded = False
    if not current_state and backed:
        # config lost but keys exist: make every key readable before anything else
        desired = {gr: GroupResourceState(read_keys=copy.deepcopy(backed)) for gr in encrypted_grs}
        seeded = True

    if not backed:
        return desired

    for gr, grs in desired.items():
        if _write_key_migrated(gr, grs):
            write_generation = grs.write_key.generation
            grs.read_keys = [k for k in grs.read_keys if k.generation > write_generation]

    newest = backed[0]
    added = False
    for grs in desired.values():
        if not grs.has_generation(newest.generation):
            grs.read_keys = _sort_newest_first([*grs.read_keys, copy.deepcopy(newest)])
            added = True

    if added or seeded:
        return desired

    for gr, grs in desired.items():
        wk = grs.write_key
        if wk is not None and wk.generation == newest.generation:
            continue
        if wk is not None and wk.backed and not migrated_for([gr], wk)[0]:
            logger.info(
                f"Not promoting key {newest.generation} for {gr}: "
                f"write key {wk.generation} has not migrated it yet"
            )
            continue
        read_keys = [k for k in grs.read_keys if k.generation != newest.generation]
        if wk is not None:
            read_keys.append(wk)
        grs.write_key = copy.deepcopy(newest)
        grs.read_keys = _sort_newest_first(read_keys)

    return desired


def get_encryption_config_and_state(
    deployer: Deployer,
    core_api: client.CoreV1Api,
    component: str,
    encrypted_grs: list[GroupResource],
) -> tuple[dict | None, EncryptionState, list[client.V1Secret], str]:
    """Read the deployed config and the key secrets and derive the desired state.

    Returns:
        Tuple of (deployed config, desired state, key secrets, transitioning
        reason). A non-empty reason means the API servers have not converged
        and callers must not act on the state.

    Raises:
        RevisionError: If the API server revisions are inconsistent
        InvalidEncryptionConfigError: If the deployed config cannot be decoded
    """
    key_secrets = list_key_secrets(core_api, component)

    config_secret, converged = deployer.deployed_encryption_config_secret()
    if not converged:
        return None, {}, key_secrets, REASON_NOT_CONVERGED

    current_config = encryptionconfig.from_secret(config_secret)
    current_state = encryptionconfig.to_encryption_state(current_config, key_secrets)
    desired_state = get_desired_encryption_state(current_state, key_secrets, encrypted_grs)
    return current_config, desired_state, key_secrets, ""
