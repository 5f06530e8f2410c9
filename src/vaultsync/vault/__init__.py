"""
Vault transports.

Each module pairs the field table of one resource kind with the transport
that reads and writes it through the Vault HTTP API.
"""

from vaultsync.vault.client import VaultAPIError, VaultClient
from vaultsync.vault.endpoint import EndpointTransport, password_policy_transport
from vaultsync.vault.mount import MOUNT_FIELDS, MountTransport
from vaultsync.vault.transit import TRANSIT_KEY_FIELDS, TransitKeyTransport

__all__ = [
    "EndpointTransport",
    "MOUNT_FIELDS",
    "MountTransport",
    "TRANSIT_KEY_FIELDS",
    "TransitKeyTransport",
    "VaultAPIError",
    "VaultClient",
    "password_policy_transport",
]
