"""Controller creating new key generations on mode changes, rotation and requests."""

from __future__ import annotations

import base64
import secrets as pysecrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from kubernetes import client

from .. import kms, metrics
from ..constants import (
    APISERVER_NAME,
    COND_KEY_CONTROLLER_DEGRADED,
    EVENT_REASON_KEY_CREATE_FAILED,
    EVENT_REASON_KEY_CREATED,
    MANAGED_NAMESPACE,
    STATUS_GENERATION_HIGH_WATER_MARK,
)
from ..deployer import Deployer
from ..encryptionconfig import EncryptionState, to_encryption_state
from ..informers import Informer
from ..operatorclient import OperatorClient
from ..preconditions import PreconditionChecker, encryption_mode_of, should_run_encryption_controllers
from ..provider import Provider
from ..secrets import from_key_state, to_key_state
from ..state import (
    DEFAULT_MODE,
    IDENTITY,
    KMS,
    MODES,
    GroupResource,
    GroupResourceState,
    Key,
    KeyState,
    key_secret_name,
    migrated_for,
    name_to_key_id,
)
from ..statemachine import get_encryption_config_and_state
from ..utils.errors import EncryptionError, InvalidKeySecretError, is_already_exists, sanitize_exception
from ..utils.events import EventRecorder
from ..utils.rate_limit import rate_limit_k8s
from .base import TRANSITION_REQUEUE, BaseController

# Keys are rotated once a week after their migration finished
ROTATION_INTERVAL = timedelta(days=7)

LOCAL_KEY_BYTES = 32
IDENTITY_KEY_BYTES = 16


def generate_key_material(mode: str) -> bytes:
    if mode == IDENTITY:
        return bytes(IDENTITY_KEY_BYTES)
    return pysecrets.token_bytes(LOCAL_KEY_BYTES)


def _kms_hash_of(ks: KeyState) -> str:
    if ks.kms_config_hash:
        return ks.kms_config_hash
    try:
        return kms.kms_config_hash(ks.kms_config)
    except EncryptionError:
        return ""


def needs_new_key(
    grs: GroupResourceState,
    current_mode: str,
    kms_config_hash: str,
    external_reason: str,
    encrypted_grs: list[GroupResource],
    now: datetime | None = None,
) -> tuple[str, bool]:
    """Decide whether one group resource needs a new key.

    Returns:
        Tuple of (internal reason, needed)
    """
    keys = grs.keys()
    if not keys:
        return "key-does-not-exist", current_mode != IDENTITY

    latest = grs.latest_key()
    if latest.generation <= 0:
        return f"key-secret-{latest.generation}-is-invalid", True

    # a deleted secret can never be migrated to
    if not latest.backed:
        return f"encryption-config-key-{latest.generation}-not-backed-by-secret", True

    # wait until read keys are pruned down to the write key plus one more
    if sum(1 for k in keys if k.backed) > 2:
        return "", False

    # nothing happens until the latest key finished migrating
    if not migrated_for(encrypted_grs, latest)[0]:
        return "", False

    if latest.mode != current_mode:
        return "encryption-mode-changed", True

    if latest.mode == IDENTITY:
        return "", False

    if current_mode == KMS and _kms_hash_of(latest) != kms_config_hash:
        return "kms-config-changed", True

    if external_reason and latest.external_reason != external_reason:
        return "external-reason-changed", True

    # the migrated timestamp also creates back pressure after slow migrations
    now = now or datetime.now(timezone.utc)
    timestamp = latest.migrated.timestamp
    if timestamp is None or now - timestamp > ROTATION_INTERVAL:
        return "rotation-interval-has-passed", True
    return "", False


def format_reasons(reasons: dict[GroupResource, str]) -> str:
    """Join per-resource reasons, or return the common one when all agree."""
    distinct = set(reasons.values())
    if len(reasons) > 1 and len(distinct) == 1:
        return next(iter(distinct))
    return ", ".join(sorted(f"{gr.resource}-{reason}" for gr, reason in reasons.items()))


def lookup_nested(obj: dict[str, Any], path: list[str]) -> Any:
    current: Any = obj
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def validate_existing_secret(existing: client.V1Secret, generation: int) -> None:
    """Check that a secret found under the name of a new key is a usable key.

    Raises:
        InvalidKeySecretError: If the secret cannot be used as that key
    """
    ks = to_key_state(existing)
    actual = name_to_key_id(existing.metadata.name or "")
    if actual is None or actual == 0:
        raise InvalidKeySecretError(f"secret {existing.metadata.name} has an invalid key generation")
    if ks.mode == KMS and not ks.kms_plugin_hash:
        raise InvalidKeySecretError(f"secret {existing.metadata.name} is a KMS key without plugin hash")
    if actual != generation:
        raise InvalidKeySecretError(
            f"secret {existing.metadata.name} has generation {actual}, expected {generation}"
        )


class KeyController(BaseController):
    """Creates the key generation the current configuration asks for."""

    degraded_condition = COND_KEY_CONTROLLER_DEGRADED

    def __init__(
        self,
        component: str,
        unsupported_config_prefix: list[str],
        operator_client: OperatorClient,
        event_recorder: EventRecorder,
        apiserver_informer: Informer,
        deployer: Deployer,
        provider: Provider,
        precondition: PreconditionChecker,
        core_api: client.CoreV1Api,
        kms_plugin_hash_fn: Callable[[dict[str, Any]], str] = kms.fetch_kms_plugin_hash,
    ):
        super().__init__("EncryptionKeyController", operator_client, event_recorder)
        self.component = component
        self.unsupported_config_prefix = unsupported_config_prefix
        self.apiserver_informer = apiserver_informer
        self.deployer = deployer
        self.provider = provider
        self.precondition = precondition
        self.core_api = core_api
        self.kms_plugin_hash_fn = kms_plugin_hash_fn

    def current_mode(self) -> tuple[str, dict[str, Any] | None, str]:
        """Return (mode, kms config, kms config hash) requested by the APIServer config.

        Raises:
            EncryptionError: For unknown modes or an unusable KMS config
        """
        apiserver = self.apiserver_informer.get(APISERVER_NAME)
        mode = encryption_mode_of(apiserver) or DEFAULT_MODE
        if mode not in MODES:
            raise EncryptionError(f"unknown encryption mode configured: {mode}")
        if mode != KMS:
            return mode, None, ""
        kms_config = ((apiserver or {}).get("spec") or {}).get("encryption", {}).get("kms")
        return mode, kms_config, kms.kms_config_hash(kms_config)

    def external_reason(self, operator_spec: dict[str, Any]) -> str:
        overrides = operator_spec.get("unsupportedConfigOverrides") or {}
        reason = lookup_nested(overrides, [*self.unsupported_config_prefix, "encryption", "reason"])
        return reason if isinstance(reason, str) else ""

    def sync(self) -> float | None:
        if not should_run_encryption_controllers(self.operator_client, self.precondition, self.provider):
            return None
        return self.check_and_create_keys()

    def check_and_create_keys(self) -> float | None:
        current_mode, kms_config, kms_config_hash = self.current_mode()
        operator_spec, operator_status, _ = self.operator_client.get_operator_state()
        external_reason = self.external_reason(operator_spec)

        encrypted_grs = self.provider.encrypted_grs()
        current_config, desired_state, key_secrets, transitioning = get_encryption_config_and_state(
            self.deployer, self.core_api, self.component, encrypted_grs
        )
        if transitioning:
            self.log_info(f"Waiting for API servers: {transitioning}", reason=transitioning)
            return TRANSITION_REQUEUE

        # identity requested and never encrypted: nothing to do
        if current_mode == IDENTITY and not key_secrets:
            return None

        reasons: dict[GroupResource, str] = {}
        for gr in encrypted_grs:
            reason, needed = needs_new_key(
                desired_state.get(gr, GroupResourceState()),
                current_mode,
                kms_config_hash,
                external_reason,
                encrypted_grs,
            )
            if needed:
                reasons[gr] = reason
        if not reasons:
            return None

        internal_reason = format_reasons(reasons)
        generation = self.next_generation(desired_state, current_config, key_secrets, operator_status)

        try:
            self.create_key(generation, current_mode, kms_config, internal_reason, external_reason)
        except Exception as e:
            self.event_recorder.warningf(
                EVENT_REASON_KEY_CREATE_FAILED,
                "Secret %s failed to be created: %s",
                key_secret_name(self.component, generation),
                sanitize_exception(e),
            )
            raise
        return None

    def next_generation(
        self,
        desired_state: EncryptionState,
        current_config: dict[str, Any] | None,
        key_secrets: list[client.V1Secret],
        operator_status: dict[str, Any],
    ) -> int:
        """Return one past the highest generation ever seen and record it as used."""
        generations = [0, int(operator_status.get(STATUS_GENERATION_HIGH_WATER_MARK) or 0)]
        for secret in key_secrets:
            generation = name_to_key_id(secret.metadata.name or "")
            if generation is not None:
                generations.append(generation)
        for grs in desired_state.values():
            generations.extend(k.generation for k in grs.keys())
        # unbacked keys of the deployed config count as used too
        for grs in to_encryption_state(current_config, []).values():
            generations.extend(k.generation for k in grs.keys())

        generation = max(generations) + 1

        def record(status: dict[str, Any]) -> None:
            if int(status.get(STATUS_GENERATION_HIGH_WATER_MARK) or 0) < generation:
                status[STATUS_GENERATION_HIGH_WATER_MARK] = generation

        self.operator_client.update_status(record)
        return generation

    def build_key(
        self,
        generation: int,
        mode: str,
        kms_config: dict[str, Any] | None,
        internal_reason: str,
        external_reason: str,
    ) -> KeyState:
        """Build the state of a new key.

        Raises:
            KMSError: If the KMS plugin cannot provide a key ID
        """
        ks = KeyState(
            generation=generation,
            mode=mode,
            internal_reason=internal_reason,
            external_reason=external_reason,
        )
        if mode == KMS:
            ks.kms_plugin_hash = self.kms_plugin_hash_fn(kms_config or {})
            ks.kms_config = kms_config
            ks.kms_config_hash = kms.kms_config_hash(kms_config)
        else:
            ks.key = Key(name=str(generation), secret=base64.b64encode(generate_key_material(mode)).decode("ascii"))
        return ks

    @rate_limit_k8s
    def _create_secret(self, secret: client.V1Secret) -> client.V1Secret:
        return self.core_api.create_namespaced_secret(namespace=MANAGED_NAMESPACE, body=secret)

    @rate_limit_k8s
    def _read_secret(self, name: str) -> client.V1Secret:
        return self.core_api.read_namespaced_secret(name=name, namespace=MANAGED_NAMESPACE)

    def create_key(
        self,
        generation: int,
        mode: str,
        kms_config: dict[str, Any] | None,
        internal_reason: str,
        external_reason: str,
    ) -> None:
        ks = self.build_key(generation, mode, kms_config, internal_reason, external_reason)
        secret = from_key_state(self.component, ks)
        name = secret.metadata.name

        try:
            self._create_secret(secret)
        except client.exceptions.ApiException as e:
            if not is_already_exists(e):
                metrics.api_call_total.labels(api_type="kubernetes", operation="create_key", result="error").inc()
                raise
            # a previous sync created it but did not observe the result
            validate_existing_secret(self._read_secret(name), generation)
            self.log_info(f"Key secret {name} already exists", reason="KeyExists")
            return

        metrics.api_call_total.labels(api_type="kubernetes", operation="create_key", result="success").inc()
        metrics.keys_created_total.labels(mode=mode).inc()
        self.event_recorder.eventf(
            EVENT_REASON_KEY_CREATED,
            "Secret %s is created because %s",
            name,
            internal_reason,
        )
        self.log_info(
            f"Created key secret {name}",
            event="created",
            reason=EVENT_REASON_KEY_CREATED,
            generation=generation,
            mode=mode,
        )
