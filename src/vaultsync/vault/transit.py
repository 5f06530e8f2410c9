"""
Transit encryption keys - Field table and transport for ``<backend>/keys/<name>``.

A key is created with one write to the key path followed by a write to its
``/config`` endpoint. The config endpoint only accepts the complete
configuration object, so every update resends all of it.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from vaultsync.fields import (
    FieldSpec,
    FieldTable,
    FieldType,
    Mutability,
    at_least,
    casefold,
    duration_seconds,
)
from vaultsync.transport import Transport
from vaultsync.vault.client import VaultClient

logger = logging.getLogger(__name__)

_KEY_PATH = re.compile(r"^(.+)/keys/(.+)$")

# Accepted by the key creation endpoint.
CREATE_FIELDS = (
    "type",
    "convergent_encryption",
    "derived",
    "key_size",
    "auto_rotate_period",
    "parameter_set",
    "hybrid_key_type_ec",
    "hybrid_key_type_pqc",
)

# Accepted by the key config endpoint.
CONFIG_FIELDS = (
    "min_decryption_version",
    "min_encryption_version",
    "deletion_allowed",
    "exportable",
    "allow_plaintext_backup",
    "auto_rotate_period",
)

# Read back from the key endpoint as-is.
READ_FIELDS = CREATE_FIELDS + CONFIG_FIELDS + (
    "latest_version",
    "min_available_version",
    "supports_encryption",
    "supports_decryption",
    "supports_derivation",
    "supports_signing",
)


def _strip_slashes(value: Any) -> Any:
    return value.strip("/") if isinstance(value, str) else value


TRANSIT_KEY_FIELDS = FieldTable(
    "transit_key",
    [
        FieldSpec(
            "backend",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            normalize=_strip_slashes,
            required=True,
            description="The Transit secret backend the key belongs to",
        ),
        FieldSpec(
            "name",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            normalize=_strip_slashes,
            required=True,
            description="Name of the encryption key",
        ),
        FieldSpec(
            "type",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            default="aes256-gcm96",
            normalize=casefold,
        ),
        FieldSpec(
            "convergent_encryption",
            FieldType.BOOL,
            Mutability.IMMUTABLE,
            default=False,
        ),
        FieldSpec("derived", FieldType.BOOL, Mutability.IMMUTABLE, default=False),
        FieldSpec("key_size", FieldType.INTEGER, Mutability.IMMUTABLE),
        FieldSpec("parameter_set", FieldType.STRING, Mutability.IMMUTABLE),
        FieldSpec(
            "hybrid_key_type_ec",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            normalize=casefold,
        ),
        FieldSpec(
            "hybrid_key_type_pqc",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            normalize=casefold,
        ),
        FieldSpec("deletion_allowed", FieldType.BOOL, default=False),
        FieldSpec(
            "exportable",
            FieldType.BOOL,
            default=False,
            latch=True,
            description="Once enabled, cannot be disabled without a new key",
        ),
        FieldSpec(
            "allow_plaintext_backup",
            FieldType.BOOL,
            default=False,
            latch=True,
            description="Once enabled, cannot be disabled without a new key",
        ),
        FieldSpec(
            "auto_rotate_period",
            FieldType.INTEGER,
            normalize=duration_seconds,
            description="Seconds before automatic rotation; 0 disables it",
        ),
        FieldSpec(
            "min_decryption_version",
            FieldType.INTEGER,
            default=1,
            validator=at_least(1),
        ),
        FieldSpec("min_encryption_version", FieldType.INTEGER, default=0),
        FieldSpec("latest_version", FieldType.INTEGER, Mutability.COMPUTED_ONLY),
        FieldSpec(
            "min_available_version", FieldType.INTEGER, Mutability.COMPUTED_ONLY
        ),
        FieldSpec("supports_encryption", FieldType.BOOL, Mutability.COMPUTED_ONLY),
        FieldSpec("supports_decryption", FieldType.BOOL, Mutability.COMPUTED_ONLY),
        FieldSpec("supports_derivation", FieldType.BOOL, Mutability.COMPUTED_ONLY),
        FieldSpec("supports_signing", FieldType.BOOL, Mutability.COMPUTED_ONLY),
    ],
)


def key_path(backend: str, name: str) -> str:
    return f"{backend.strip('/')}/keys/{name.strip('/')}"


def split_key_path(path: str) -> Tuple[str, str]:
    """
    Split a key path into backend and key name.

    Raises:
        ValueError: If the path is not of the form ``<backend>/keys/<name>``.
    """
    match = _KEY_PATH.match(path)
    if not match:
        raise ValueError(f"invalid transit key ID {path!r}")
    return match.group(1), match.group(2)


class TransitKeyTransport(Transport):
    """Transport for transit secrets engine keys."""

    def __init__(
        self, client: VaultClient, fields: FieldTable = TRANSIT_KEY_FIELDS
    ):
        super().__init__(fields)
        self.client = client

    def identify(self, desired: Dict[str, Any]) -> str:
        return key_path(desired["backend"], desired["name"])

    async def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        backend, name = split_key_path(resource_id)

        logger.debug(f"Reading key {name} from backend {backend}")
        data = await self.client.read(resource_id)
        if data is None:
            logger.warning(f"Key {resource_id!r} not found")
            return None

        state = {"backend": backend, "name": name}
        for field_name in READ_FIELDS:
            if field_name in data:
                state[field_name] = data[field_name]
        # key_size is only reported for key types that have one
        if state.get("key_size") is None:
            state.pop("key_size", None)
        return state

    async def create(self, fields: Dict[str, Any]) -> str:
        path = self.identify(fields)
        key_data = {name: fields[name] for name in CREATE_FIELDS if name in fields}
        config_data = {name: fields[name] for name in CONFIG_FIELDS if name in fields}

        logger.debug(f"Creating encryption key {path}")
        await self.client.write(path, key_data)
        logger.debug(f"Setting configuration for encryption key {path}")
        await self.client.write(f"{path}/config", config_data)
        return path

    def build_update_payload(
        self, changed: Dict[str, Any], desired: Dict[str, Any]
    ) -> Dict[str, Any]:
        payload = {name: desired[name] for name in CONFIG_FIELDS if name in desired}
        payload.update(changed)
        return payload

    async def write(self, resource_id: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Updating transit key {resource_id}")
        await self.client.write(f"{resource_id}/config", payload)

    async def delete(self, resource_id: str) -> None:
        logger.debug(f"Deleting key {resource_id}")
        await self.client.delete(resource_id)
