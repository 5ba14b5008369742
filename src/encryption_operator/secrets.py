"""Conversion between key secrets and key states."""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any

from kubernetes import client

from .constants import (
    ANNOTATION_DESCRIPTION,
    ANNOTATION_EXTERNAL_REASON,
    ANNOTATION_INTERNAL_REASON,
    ANNOTATION_MIGRATED_RESOURCES,
    ANNOTATION_MIGRATED_TIMESTAMP,
    ANNOTATION_MODE,
    DATA_KEY,
    DATA_KMS_CONFIG,
    DATA_KMS_PLUGIN_HASH,
    DESCRIPTION_WARNING,
    FINALIZER,
    LABEL_COMPONENT,
    MANAGED_NAMESPACE,
)
from .state import (
    IDENTITY,
    KMS,
    MODES,
    GroupResource,
    Key,
    KeyState,
    MigratedState,
    format_timestamp,
    key_secret_name,
    name_to_key_id,
    parse_timestamp,
)
from .utils.errors import InvalidKeySecretError
from .utils.rate_limit import rate_limit_k8s


def _decode_data(value: str | None) -> bytes:
    if not value:
        return b""
    return base64.b64decode(value)


def _encode_data(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _parse_migrated_resources(value: str) -> list[GroupResource]:
    parsed = json.loads(value)
    # Older secrets wrap the list as {"resources": [...]}
    if isinstance(parsed, dict):
        parsed = parsed.get("resources") or []
    if not isinstance(parsed, list):
        raise ValueError("expected a list of group resources")
    return [GroupResource.from_dict(item) for item in parsed]


def to_key_state(secret: client.V1Secret) -> KeyState:
    """Convert a key secret to a key state.

    Args:
        secret: Key secret from openshift-config-managed

    Returns:
        The key state, marked as backed

    Raises:
        InvalidKeySecretError: If the secret does not describe a valid key
    """
    meta = secret.metadata
    ref = f"{meta.namespace}/{meta.name}"
    annotations = meta.annotations or {}
    data = secret.data or {}

    key = KeyState(backed=True)

    if ANNOTATION_MIGRATED_TIMESTAMP in annotations:
        try:
            key.migrated.timestamp = parse_timestamp(annotations[ANNOTATION_MIGRATED_TIMESTAMP])
        except ValueError as e:
            raise InvalidKeySecretError(
                f"secret {ref} has invalid {ANNOTATION_MIGRATED_TIMESTAMP} annotation: {e}"
            ) from e

    if annotations.get(ANNOTATION_MIGRATED_RESOURCES):
        try:
            key.migrated.resources = _parse_migrated_resources(annotations[ANNOTATION_MIGRATED_RESOURCES])
        except (ValueError, AttributeError) as e:
            raise InvalidKeySecretError(
                f"secret {ref} has invalid {ANNOTATION_MIGRATED_RESOURCES} annotation: {e}"
            ) from e

    key.internal_reason = annotations.get(ANNOTATION_INTERNAL_REASON) or ""
    key.external_reason = annotations.get(ANNOTATION_EXTERNAL_REASON) or ""

    mode = annotations.get(ANNOTATION_MODE, "")
    if mode not in MODES:
        raise InvalidKeySecretError(f"secret {ref} has invalid mode: {mode}")
    key.mode = mode

    try:
        key_data = _decode_data(data.get(DATA_KEY))
    except (binascii.Error, ValueError) as e:
        raise InvalidKeySecretError(f"secret {ref} has undecodable key data: {e}") from e

    if mode not in (IDENTITY, KMS) and not key_data:
        raise InvalidKeySecretError(f'secret {ref} of mode "{mode}" must have non-empty key "{DATA_KEY}"')

    generation = name_to_key_id(meta.name or "")
    if generation is None:
        raise InvalidKeySecretError(f"secret {ref} has an invalid name")
    key.generation = generation

    if mode == KMS:
        if DATA_KMS_PLUGIN_HASH not in data:
            raise InvalidKeySecretError(f'secret {ref} does not contain required data field "{DATA_KMS_PLUGIN_HASH}"')
        if DATA_KMS_CONFIG not in data:
            raise InvalidKeySecretError(f'secret {ref} does not contain required data field "{DATA_KMS_CONFIG}"')
        try:
            key.kms_plugin_hash = _decode_data(data[DATA_KMS_PLUGIN_HASH]).decode("utf-8")
            key.kms_config = json.loads(_decode_data(data[DATA_KMS_CONFIG]))
        except (binascii.Error, ValueError) as e:
            raise InvalidKeySecretError(
                f'could not load KMS config from secret {ref} at data field "{DATA_KMS_CONFIG}": {e}'
            ) from e
    else:
        # The generation is used as key name to keep the etcd value prefix short
        key.key = Key(name=str(generation), secret=_encode_data(key_data))

    return key


def from_key_state(component: str, ks: KeyState) -> client.V1Secret:
    """Convert a key state to a key secret.

    Args:
        component: Component owning the key
        ks: Key state

    Returns:
        The secret to persist in openshift-config-managed

    Raises:
        InvalidKeySecretError: If the key material is not valid base64
    """
    try:
        raw = base64.b64decode(ks.key.secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeySecretError("failed to decode key string") from e

    annotations = {
        ANNOTATION_DESCRIPTION: DESCRIPTION_WARNING,
        ANNOTATION_MODE: ks.mode,
        ANNOTATION_INTERNAL_REASON: ks.internal_reason,
        ANNOTATION_EXTERNAL_REASON: ks.external_reason,
    }
    if ks.migrated.timestamp is not None:
        annotations[ANNOTATION_MIGRATED_TIMESTAMP] = format_timestamp(ks.migrated.timestamp)
    if ks.migrated.resources:
        annotations[ANNOTATION_MIGRATED_RESOURCES] = json.dumps(
            [gr.to_dict() for gr in ks.migrated.resources], separators=(",", ":")
        )

    data: dict[str, str] = {}
    if ks.mode == KMS:
        data[DATA_KMS_PLUGIN_HASH] = _encode_data(ks.kms_plugin_hash.encode("utf-8"))
        data[DATA_KMS_CONFIG] = _encode_data(
            json.dumps(ks.kms_config, sort_keys=True, separators=(",", ":")).encode("utf-8")
        )
    elif raw:
        data[DATA_KEY] = _encode_data(raw)

    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=key_secret_name(component, ks.generation),
            namespace=MANAGED_NAMESPACE,
            labels={LABEL_COMPONENT: component},
            annotations=annotations,
            finalizers=[FINALIZER],
        ),
        data=data,
        type="Opaque",
    )


def key_secret_selector(component: str) -> str:
    """Return the label selector matching the key secrets of a component."""
    return f"{LABEL_COMPONENT}={component}"


def owned_by_component(secret: client.V1Secret, component: str) -> bool:
    """Check both label and name so a prefix collision never leaks another component's keys."""
    meta = secret.metadata
    if (meta.labels or {}).get(LABEL_COMPONENT) != component:
        return False
    return re.fullmatch(rf"encryption-key-{re.escape(component)}-\d+", meta.name or "") is not None


@rate_limit_k8s
def list_key_secrets(core_api: client.CoreV1Api, component: str) -> list[client.V1Secret]:
    """List the key secrets of a component with a live request.

    Args:
        core_api: Kubernetes CoreV1Api instance
        component: Component owning the keys

    Returns:
        Key secrets belonging to the component
    """
    secret_list = core_api.list_namespaced_secret(
        namespace=MANAGED_NAMESPACE,
        label_selector=key_secret_selector(component),
    )
    return [s for s in secret_list.items or [] if owned_by_component(s, component)]


def has_resource(migrated: MigratedState, gr: GroupResource) -> bool:
    return gr in migrated.resources


def set_migrated(secret: client.V1Secret, migrated: MigratedState) -> None:
    """Write the migration annotations of a key secret in place."""
    annotations: dict[str, Any] = dict(secret.metadata.annotations or {})
    if migrated.timestamp is not None:
        annotations[ANNOTATION_MIGRATED_TIMESTAMP] = format_timestamp(migrated.timestamp)
    annotations[ANNOTATION_MIGRATED_RESOURCES] = json.dumps(
        [gr.to_dict() for gr in migrated.resources], separators=(",", ":")
    )
    secret.metadata.annotations = annotations
