"""Providers decide which resources get encrypted."""

from __future__ import annotations

from typing import Protocol

from .state import GroupResource


class Provider(Protocol):
    def encrypted_grs(self) -> list[GroupResource]:
        """Return the group resources to encrypt."""
        ...

    def should_run_encryption_controllers(self) -> bool:
        """Return False to keep all encryption controllers idle."""
        ...


class StaticProvider:
    """Provider with a fixed list of group resources."""

    def __init__(self, grs: list[GroupResource], enabled: bool = True):
        self.grs = sorted(set(grs))
        self.enabled = enabled

    @classmethod
    def from_string(cls, value: str) -> StaticProvider:
        """Build from a comma separated list such as ``secrets,routes.route.openshift.io``."""
        grs = [GroupResource.parse(v.strip()) for v in value.split(",") if v.strip()]
        return cls(grs)

    def encrypted_grs(self) -> list[GroupResource]:
        return list(self.grs)

    def should_run_encryption_controllers(self) -> bool:
        return self.enabled
