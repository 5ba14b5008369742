"""KMS naming helpers and the KMS v2 plugin Status client.

The config hash of a KMS configuration is embedded in the plugin socket path
and every KMS provider name carries the key generation, the config hash and a
hash of the resources it encrypts, so an EncryptionConfiguration can be
decoded back into key states without looking anything up.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import grpc
from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import message_factory

from .state import GroupResource
from .utils.errors import KMSError

logger = logging.getLogger(__name__)

UNIX_SOCKET_BASE_DIR = "unix:///var/run/kms"
AWS_KMS_PROVIDER = "AWS"

KMS_API_VERSION = "v2"
# Timeout the API server uses for calls to the plugin
PROVIDER_TIMEOUT = "10s"
# Deadline for the Status call made before a KMS key is created
STATUS_TIMEOUT_SECONDS = 30.0

_STATUS_METHOD = "/v2.KeyManagementService/Status"

_ENDPOINT_HASH = re.compile(r"kms-([a-f0-9]{16})\.sock$")
_PROVIDER_NAME = re.compile(r"^kms-(\d+)-([a-f0-9]{16})-([a-f0-9]{8})$")


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_unix_socket_path(kms_config: dict[str, Any] | None) -> tuple[str, str]:
    """Generate the plugin socket path for a KMS configuration.

    Args:
        kms_config: The ``spec.encryption.kms`` block of the APIServer config

    Returns:
        Tuple of (socket path, 16 character config hash)

    Raises:
        KMSError: If the configuration is incomplete or of an unsupported type
    """
    if kms_config is None:
        raise KMSError("kmsConfig cannot be nil")

    provider_type = kms_config.get("type", "")
    if provider_type != AWS_KMS_PROVIDER:
        raise KMSError(f"unsupported KMS provider type: {provider_type}")

    aws = kms_config.get("aws")
    if aws is None:
        raise KMSError("AWS KMS config cannot be nil for AWS provider type")
    if not aws.get("keyARN"):
        raise KMSError("AWS KMS KeyARN cannot be empty")
    if not aws.get("region"):
        raise KMSError("AWS region cannot be empty")

    short_hash = _sha256_hex(f"{aws['keyARN']}:{aws['region']}")[:16]
    return endpoint_for(short_hash), short_hash


def kms_config_hash(kms_config: dict[str, Any] | None) -> str:
    """Return the 16 character hash identifying a KMS configuration."""
    _, short_hash = generate_unix_socket_path(kms_config)
    return short_hash


def compute_kms_key_hash(config_hash: str, key_id: str) -> str:
    """Hash the key ID reported by the plugin together with the config hash.

    Returns:
        The first 32 hex characters, or an empty string for an empty key ID
    """
    if not key_id:
        return ""
    return _sha256_hex(f"{config_hash}:{key_id}")[:32]


def resource_hash(*grs: GroupResource) -> str:
    """Return a short hash of a set of group resources, independent of their order."""
    joined = ",".join(sorted(str(gr) for gr in grs))
    return _sha256_hex(joined)[:8]


def endpoint_for(config_hash: str) -> str:
    return f"{UNIX_SOCKET_BASE_DIR}/kms-{config_hash}.sock"


def config_hash_from_endpoint(endpoint: str) -> str:
    """Extract the config hash from a plugin socket path.

    Raises:
        KMSError: If the endpoint does not follow the socket naming scheme
    """
    match = _ENDPOINT_HASH.search(endpoint or "")
    if match is None:
        raise KMSError(f"invalid KMS endpoint format: {endpoint}")
    return match.group(1)


def provider_name(generation: int, config_hash: str, *grs: GroupResource) -> str:
    """Return the KMS provider name ``kms-<generation>-<configHash>-<resourceHash>``."""
    return f"kms-{generation}-{config_hash}-{resource_hash(*grs)}"


def parse_provider_name(name: str) -> tuple[int, str, str]:
    """Split a KMS provider name into (generation, config hash, resource hash).

    Raises:
        KMSError: If the name does not follow the naming scheme
    """
    match = _PROVIDER_NAME.match(name or "")
    if match is None:
        raise KMSError(f"invalid KMS provider name format: {name}")
    return int(match.group(1)), match.group(2), match.group(3)


def _add_field(
    msg: descriptor_pb2.DescriptorProto,
    *,
    name: str,
    number: int,
    label: int,
    field_type: int,
) -> None:
    field = msg.field.add()
    field.name = name
    field.number = number
    field.label = label
    field.type = field_type


@dataclass(frozen=True)
class KMSMessages:
    StatusRequest: type
    StatusResponse: type


@lru_cache(maxsize=1)
def _messages() -> KMSMessages:
    fdp = descriptor_pb2.FileDescriptorProto()
    fdp.name = "encryption_operator_kms_v2_status.proto"
    fdp.package = "v2"
    fdp.syntax = "proto3"

    request = fdp.message_type.add()
    request.name = "StatusRequest"

    response = fdp.message_type.add()
    response.name = "StatusResponse"
    _add_field(response, name="version", number=1, label=1, field_type=9)
    _add_field(response, name="healthz", number=2, label=1, field_type=9)
    _add_field(response, name="key_id", number=3, label=1, field_type=9)

    pool = descriptor_pool.DescriptorPool()
    pool.Add(fdp)
    request_desc = pool.FindMessageTypeByName("v2.StatusRequest")
    response_desc = pool.FindMessageTypeByName("v2.StatusResponse")
    return KMSMessages(
        StatusRequest=message_factory.GetMessageClass(request_desc),
        StatusResponse=message_factory.GetMessageClass(response_desc),
    )


@dataclass(frozen=True)
class StatusResponse:
    version: str
    healthz: str
    key_id: str


class KMSClient:
    """Client for the Status endpoint of a KMS v2 plugin listening on a unix socket."""

    def __init__(self, endpoint: str, timeout: float = STATUS_TIMEOUT_SECONDS):
        if not endpoint:
            raise KMSError("kms endpoint cannot be empty")
        self.endpoint = endpoint
        self.timeout = timeout
        self._channel = grpc.insecure_channel(endpoint)

    def status(self) -> StatusResponse:
        """Call the plugin's Status endpoint.

        Raises:
            KMSError: If the call fails or times out
        """
        messages = _messages()
        call = self._channel.unary_unary(
            _STATUS_METHOD,
            request_serializer=messages.StatusRequest.SerializeToString,
            response_deserializer=messages.StatusResponse.FromString,
        )
        try:
            resp = call(messages.StatusRequest(), timeout=self.timeout)
        except grpc.RpcError as e:
            raise KMSError(f"failed to call KMS Status endpoint at {self.endpoint}: {e}") from e
        return StatusResponse(version=resp.version, healthz=resp.healthz, key_id=resp.key_id)

    def close(self) -> None:
        self._channel.close()

    def __enter__(self) -> KMSClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def fetch_kms_plugin_hash(kms_config: dict[str, Any], client_factory: Any = KMSClient) -> str:
    """Ask the plugin for its current key ID and derive the KMS plugin hash.

    Args:
        kms_config: The ``spec.encryption.kms`` block of the APIServer config
        client_factory: Callable building a client from an endpoint

    Returns:
        The KMS plugin hash to store on a new key secret

    Raises:
        KMSError: If the plugin is unreachable, unhealthy or reports no key ID
    """
    endpoint, config_hash = generate_unix_socket_path(kms_config)
    with client_factory(endpoint) as kms_client:
        status = kms_client.status()
    if status.healthz != "ok":
        raise KMSError(f"KMS plugin at {endpoint} is not healthy: {status.healthz}")
    plugin_hash = compute_kms_key_hash(config_hash, status.key_id)
    if not plugin_hash:
        raise KMSError(f"KMS plugin at {endpoint} returned an empty key ID")
    logger.info(f"KMS plugin at {endpoint} reported version {status.version}")
    return plugin_hash
