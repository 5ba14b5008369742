"""Conversion between EncryptionConfiguration objects and per-resource key state.

Provider order is what matters to the API server: the first provider encrypts
new writes, every other provider is only used to decrypt existing data.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
from typing import Any

from kubernetes import client

from . import kms
from .constants import ENCRYPTION_CONFIG_DATA_KEY, ENCRYPTION_CONFIG_SECRET_NAME
from .secrets import to_key_state
from .state import (
    AESCBC,
    AESGCM,
    IDENTITY,
    KMS,
    SECRETBOX,
    GroupResource,
    GroupResourceState,
    Key,
    KeyState,
)
from .utils.errors import EncryptionError, InvalidEncryptionConfigError, InvalidKeySecretError

logger = logging.getLogger(__name__)

API_VERSION = "apiserver.config.k8s.io/v1"
KIND = "EncryptionConfiguration"

# Identity keys carrying a generation are rendered as an aesgcm provider with
# this all-zero key. Nothing ever writes with it; it only marks the generation.
IDENTITY_PLACEHOLDER_SECRET = base64.b64encode(bytes(16)).decode("ascii")

_LOCAL_MODES = (AESCBC, AESGCM, SECRETBOX)

EncryptionState = dict[GroupResource, GroupResourceState]


def config_secret_name(component: str) -> str:
    """Name of the desired config secret in openshift-config-managed."""
    return f"{ENCRYPTION_CONFIG_SECRET_NAME}-{component}"


def revisioned_secret_name(revision: str) -> str:
    """Name of the config secret deployed with a given revision."""
    return f"{ENCRYPTION_CONFIG_SECRET_NAME}-{revision}"


def from_secret(secret: client.V1Secret | None) -> dict[str, Any] | None:
    """Decode the EncryptionConfiguration stored in a secret.

    Raises:
        InvalidEncryptionConfigError: If the secret holds no valid configuration
    """
    if secret is None:
        return None
    ref = f"{secret.metadata.namespace}/{secret.metadata.name}"
    raw = (secret.data or {}).get(ENCRYPTION_CONFIG_DATA_KEY)
    if not raw:
        raise InvalidEncryptionConfigError(f'secret {ref} is missing data key "{ENCRYPTION_CONFIG_DATA_KEY}"')
    try:
        config = json.loads(base64.b64decode(raw))
    except (binascii.Error, ValueError) as e:
        raise InvalidEncryptionConfigError(f"secret {ref} has an invalid encryption config: {e}") from e
    if not isinstance(config, dict) or config.get("kind") != KIND:
        raise InvalidEncryptionConfigError(f"secret {ref} does not hold an {KIND}")
    return config


def to_secret(namespace: str, name: str, config: dict[str, Any]) -> client.V1Secret:
    """Wrap an EncryptionConfiguration into a secret."""
    payload = json.dumps(config).encode("utf-8")
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        data={ENCRYPTION_CONFIG_DATA_KEY: base64.b64encode(payload).decode("ascii")},
        type="Opaque",
    )


def _backed_keys(key_secrets: list[client.V1Secret]) -> dict[int, KeyState]:
    backed: dict[int, KeyState] = {}
    for secret in key_secrets:
        try:
            ks = to_key_state(secret)
        except InvalidKeySecretError as e:
            logger.warning(f"Ignoring invalid key secret: {e}")
            continue
        backed[ks.generation] = ks
    return backed


def _generation_from_key_name(name: str, provider: str) -> int:
    try:
        generation = int(name)
    except (TypeError, ValueError) as e:
        raise InvalidEncryptionConfigError(f"{provider} provider has invalid key name {name!r}") from e
    if generation <= 0:
        raise InvalidEncryptionConfigError(f"{provider} provider has invalid key name {name!r}")
    return generation


def _provider_to_key(provider: dict[str, Any]) -> KeyState | None:
    """Decode one provider; returns None for the identity provider."""
    if "identity" in provider:
        return None

    for mode in _LOCAL_MODES:
        if mode in provider:
            keys = (provider[mode] or {}).get("keys") or []
            if not keys:
                raise InvalidEncryptionConfigError(f"{mode} provider has no keys")
            first = keys[0]
            generation = _generation_from_key_name(first.get("name"), mode)
            secret = first.get("secret", "")
            key_mode = mode
            if mode == AESGCM and secret == IDENTITY_PLACEHOLDER_SECRET:
                key_mode = IDENTITY
            return KeyState(generation=generation, mode=key_mode, key=Key(name=str(generation), secret=secret))

    if "kms" in provider:
        cfg = provider["kms"] or {}
        try:
            generation, config_hash, _ = kms.parse_provider_name(cfg.get("name", ""))
            endpoint_hash = kms.config_hash_from_endpoint(cfg.get("endpoint", ""))
        except EncryptionError as e:
            raise InvalidEncryptionConfigError(str(e)) from e
        if endpoint_hash != config_hash:
            raise InvalidEncryptionConfigError(
                f"kms provider {cfg.get('name')} does not match endpoint {cfg.get('endpoint')}"
            )
        return KeyState(generation=generation, mode=KMS, kms_config_hash=config_hash)

    raise InvalidEncryptionConfigError(f"unknown provider {sorted(provider)}")


def _safe_config_hash(ks: KeyState) -> str:
    if ks.kms_config_hash:
        return ks.kms_config_hash
    try:
        return kms.kms_config_hash(ks.kms_config)
    except EncryptionError:
        return ""


def _matches_backing_secret(config_key: KeyState, backed: KeyState) -> bool:
    if config_key.generation != backed.generation or config_key.mode != backed.mode:
        return False
    if config_key.mode == IDENTITY:
        return True
    if config_key.mode == KMS:
        return config_key.kms_config_hash == _safe_config_hash(backed)
    return config_key.key.secret == backed.key.secret


def _resolve(config_key: KeyState, backed: dict[int, KeyState]) -> KeyState:
    candidate = backed.get(config_key.generation)
    if candidate is not None and _matches_backing_secret(config_key, candidate):
        resolved = copy.deepcopy(candidate)
        if resolved.mode == KMS:
            resolved.kms_config_hash = config_key.kms_config_hash
        return resolved
    return config_key


def to_encryption_state(
    config: dict[str, Any] | None,
    key_secrets: list[client.V1Secret],
) -> EncryptionState:
    """Convert an EncryptionConfiguration into per-resource key state.

    The first provider becomes the write key. A leading identity provider means
    there is no write key, unless it is followed by an identity placeholder,
    which then is the (identity) write key. Other identity providers are
    implicit and dropped. Keys backed by a secret carry that secret's state.

    Args:
        config: Decoded EncryptionConfiguration, or None
        key_secrets: Key secrets of the component

    Returns:
        Mapping of group resource to its key state

    Raises:
        InvalidEncryptionConfigError: If a provider cannot be decoded
    """
    if config is None:
        return {}

    backed = _backed_keys(key_secrets)
    result: EncryptionState = {}

    for entry in config.get("resources") or []:
        providers = entry.get("providers") or []
        decoded = [_provider_to_key(p) for p in providers]

        for resource in entry.get("resources") or []:
            gr = GroupResource.parse(resource)
            keys = [None if k is None else _resolve(copy.deepcopy(k), backed) for k in decoded]

            grs = GroupResourceState()
            rest = keys
            if keys:
                first = keys[0]
                if first is not None:
                    grs.write_key = first
                    rest = keys[1:]
                elif len(keys) > 1 and keys[1] is not None and keys[1].mode == IDENTITY:
                    grs.write_key = keys[1]
                    rest = keys[2:]
                else:
                    rest = keys[1:]

            seen = {grs.write_key.generation} if grs.write_key is not None else set()
            for ks in rest:
                if ks is None or ks.generation in seen:
                    continue
                seen.add(ks.generation)
                grs.read_keys.append(ks)

            result[gr] = grs

    return result


def _key_to_provider(gr: GroupResource, ks: KeyState) -> dict[str, Any]:
    if ks.mode == KMS:
        config_hash = _safe_config_hash(ks)
        return {
            "kms": {
                "apiVersion": kms.KMS_API_VERSION,
                "name": kms.provider_name(ks.generation, config_hash, gr),
                "endpoint": kms.endpoint_for(config_hash),
                "timeout": kms.PROVIDER_TIMEOUT,
            }
        }
    if ks.mode == IDENTITY:
        return {"aesgcm": {"keys": [{"name": str(ks.generation), "secret": IDENTITY_PLACEHOLDER_SECRET}]}}
    if ks.mode in _LOCAL_MODES:
        return {ks.mode: {"keys": [{"name": ks.key.name or str(ks.generation), "secret": ks.key.secret}]}}
    raise InvalidEncryptionConfigError(f"key {ks.generation} has unknown mode {ks.mode!r}")


def from_encryption_state(encryption_state: EncryptionState) -> dict[str, Any]:
    """Render per-resource key state as an EncryptionConfiguration.

    Providers are ordered write key, read keys, identity. With no write key or
    an identity write key, identity comes first and every other provider is a
    read-only fallback.
    """
    resources = []
    for gr in sorted(encryption_state, key=str):
        grs = encryption_state[gr]
        write = grs.write_key
        reads = [_key_to_provider(gr, k) for k in grs.read_keys]
        if write is None:
            providers = [{"identity": {}}, *reads]
        elif write.mode == IDENTITY:
            providers = [{"identity": {}}, _key_to_provider(gr, write), *reads]
        else:
            providers = [_key_to_provider(gr, write), *reads, {"identity": {}}]
        resources.append({"resources": [str(gr)], "providers": providers})

    return {"kind": KIND, "apiVersion": API_VERSION, "resources": resources}


def to_config_string(providers: list[dict[str, Any]]) -> str:
    """Render a provider list compactly, e.g. ``aescbc:1,identity``."""
    parts = []
    for provider in providers:
        key = _provider_to_key(provider)
        if key is None:
            parts.append("identity")
        elif key.mode == KMS:
            parts.append(f"kms:{key.generation}")
        else:
            parts.append(f"{key.mode}:{key.generation}")
    return ",".join(parts)


def config_string_for(config: dict[str, Any] | None, gr: GroupResource) -> str:
    """Return the compact provider string of one resource, or an empty string."""
    for entry in (config or {}).get("resources") or []:
        if str(gr) in (entry.get("resources") or []):
            return to_config_string(entry.get("providers") or [])
    return ""
