"""
Resource Registry - The table of resource kinds vaultsync can reconcile.

The registry is built once at startup by ``build_registry()`` and handed to
whatever needs it. It cannot be changed after construction.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List

from vaultsync.fields import FieldTable
from vaultsync.transport import Transport
from vaultsync.vault.client import VaultClient
from vaultsync.vault.endpoint import PASSWORD_POLICY_FIELDS, password_policy_transport
from vaultsync.vault.mount import MOUNT_FIELDS, MountTransport
from vaultsync.vault.transit import TRANSIT_KEY_FIELDS, TransitKeyTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[VaultClient], Transport]


@dataclass(frozen=True)
class ResourceKind:
    """A reconcilable resource kind: its fields and how to reach it."""

    name: str
    fields: FieldTable
    transport_factory: TransportFactory
    description: str = ""


class ResourceRegistry:
    """
    Immutable registry of resource kinds, keyed by kind name.

    Raises ValueError on construction if two kinds share a name.
    """

    def __init__(self, kinds: Iterable[ResourceKind]):
        by_name: Dict[str, ResourceKind] = {}
        for kind in kinds:
            if kind.name in by_name:
                raise ValueError(f"Resource kind '{kind.name}' is already registered")
            if kind.fields.kind != kind.name:
                raise ValueError(
                    f"Resource kind '{kind.name}' uses the field table of "
                    f"'{kind.fields.kind}'"
                )
            by_name[kind.name] = kind
            logger.debug(f"Registered resource kind: {kind.name}")
        self._kinds = MappingProxyType(by_name)

    def get(self, name: str) -> ResourceKind:
        """
        Look up a resource kind.

        Raises:
            ValueError: If the kind is not registered.
        """
        if name not in self._kinds:
            available = ", ".join(sorted(self._kinds)) or "none"
            raise ValueError(
                f"Resource kind '{name}' not found. Available kinds: {available}"
            )
        return self._kinds[name]

    def has_kind(self, name: str) -> bool:
        return name in self._kinds

    def list_kinds(self) -> List[str]:
        return list(self._kinds)

    def create_transport(self, name: str, client: VaultClient) -> Transport:
        """Instantiate the transport of a kind for the given client."""
        return self.get(name).transport_factory(client)


def build_registry() -> ResourceRegistry:
    """Build the registry of the built-in Vault resource kinds."""
    return ResourceRegistry(
        [
            ResourceKind(
                "mount",
                MOUNT_FIELDS,
                MountTransport,
                "Secrets engine mount (sys/mounts)",
            ),
            ResourceKind(
                "transit_key",
                TRANSIT_KEY_FIELDS,
                TransitKeyTransport,
                "Transit secrets engine encryption key",
            ),
            ResourceKind(
                "password_policy",
                PASSWORD_POLICY_FIELDS,
                password_policy_transport,
                "Password generation policy (sys/policies/password)",
            ),
        ]
    )
