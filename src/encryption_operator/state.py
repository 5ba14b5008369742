"""Data model for encryption keys and per-resource encryption state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Modes
AESCBC = "aescbc"
AESGCM = "aesgcm"
SECRETBOX = "secretbox"
IDENTITY = "identity"
KMS = "KMS"

MODES = (AESCBC, AESGCM, SECRETBOX, IDENTITY, KMS)

# An empty encryption type in the APIServer config means encryption is off
DEFAULT_MODE = IDENTITY

_GENERATION_SUFFIX = re.compile(r"-(\d+)$")


@dataclass(frozen=True, order=True)
class GroupResource:
    """A (group, resource) pair, e.g. ("", "secrets") or ("route.openshift.io", "routes")."""

    group: str
    resource: str

    def __str__(self) -> str:
        if not self.group:
            return self.resource
        return f"{self.resource}.{self.group}"

    @classmethod
    def parse(cls, value: str) -> GroupResource:
        """Parse the ``resource.group`` string form."""
        resource, _, group = value.partition(".")
        return cls(group=group, resource=resource)

    def to_dict(self) -> dict[str, str]:
        return {"group": self.group, "resource": self.resource}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupResource:
        return cls(group=data.get("group", "") or "", resource=data.get("resource", "") or "")


@dataclass
class Key:
    """Symmetric key material as it appears in an EncryptionConfiguration provider."""

    name: str = ""
    secret: str = ""


@dataclass
class MigratedState:
    """Which resources have been re-written under a key, and when that finished."""

    timestamp: datetime | None = None
    resources: list[GroupResource] = field(default_factory=list)


@dataclass
class KeyState:
    """One generation of an encryption key."""

    generation: int = 0
    mode: str = ""
    key: Key = field(default_factory=Key)
    kms_plugin_hash: str = ""
    kms_config: dict[str, Any] | None = None
    # Derived from kms_config, or parsed from a provider endpoint when no secret backs the key
    kms_config_hash: str = ""
    migrated: MigratedState = field(default_factory=MigratedState)
    internal_reason: str = ""
    external_reason: str = ""
    # Only set by the secret codec
    backed: bool = False


@dataclass
class GroupResourceState:
    """Write and read keys for one group resource.

    ``read_keys`` never contains the generation of ``write_key`` and is
    ordered newest generation first, which is also the provider order in the
    deployed EncryptionConfiguration.
    """

    write_key: KeyState | None = None
    read_keys: list[KeyState] = field(default_factory=list)

    def has_write_key(self) -> bool:
        return self.write_key is not None

    def keys(self) -> list[KeyState]:
        """Return the write key (if any) followed by the read keys."""
        if self.write_key is None:
            return list(self.read_keys)
        return [self.write_key, *self.read_keys]

    def latest_key(self) -> KeyState | None:
        keys = self.keys()
        if not keys:
            return None
        return max(keys, key=lambda k: k.generation)

    def has_generation(self, generation: int) -> bool:
        return any(k.generation == generation for k in self.keys())


def key_secret_name(component: str, generation: int) -> str:
    """Return the name of the secret holding the given key generation."""
    return f"encryption-key-{component}-{generation}"


def name_to_key_id(name: str) -> int | None:
    """Extract the key generation from a secret name.

    Returns:
        The positive generation number, or None when the name has no valid suffix
    """
    match = _GENERATION_SUFFIX.search(name)
    if match is None:
        return None
    generation = int(match.group(1))
    if generation <= 0:
        return None
    return generation


def migrated_for(grs: list[GroupResource], key: KeyState) -> tuple[bool, list[GroupResource], str]:
    """Check whether a key has been migrated for all of the given resources.

    Returns:
        Tuple of (all migrated, missing resources, human readable reason)
    """
    migrated = set(key.migrated.resources)
    missing = [gr for gr in grs if gr not in migrated]
    if missing:
        names = ", ".join(str(gr) for gr in missing)
        return False, missing, f"key ID {key.generation} misses resource {names} among migrated resources"
    return True, [], ""


def equal_key_and_equal_id(a: KeyState, b: KeyState) -> bool:
    """Return True when both keys carry the same generation and key material."""
    if a.generation != b.generation or a.mode != b.mode:
        return False
    if a.mode == IDENTITY:
        return True
    if a.mode == KMS:
        return a.kms_plugin_hash == b.kms_plugin_hash or not a.kms_plugin_hash or not b.kms_plugin_hash
    return a.key.secret == b.key.secret


_FRACTION = re.compile(r"\.(\d+)")


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC3339 in UTC, keeping any fractional seconds."""
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
