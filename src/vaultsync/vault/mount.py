"""
Secrets engine mounts - Field table and transport for ``sys/mounts``.

Mounts are created with ``POST sys/mounts/<path>``, moved with
``sys/remount``, changed in place through the tune endpoint, and removed
with ``DELETE sys/mounts/<path>``.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from vaultsync.errors import TransportError
from vaultsync.fields import (
    FieldSpec,
    FieldTable,
    FieldType,
    Mutability,
    casefold,
    duration_seconds,
    sorted_strings,
)
from vaultsync.transport import Transport
from vaultsync.vault.client import VaultAPIError, VaultClient

logger = logging.getLogger(__name__)

# Settings sent under "config" in the mount input and read back from it.
CONFIG_FIELDS = (
    "default_lease_ttl",
    "max_lease_ttl",
    "force_no_cache",
    "audit_non_hmac_request_keys",
    "audit_non_hmac_response_keys",
    "listing_visibility",
    "passthrough_request_headers",
    "allowed_response_headers",
    "plugin_version",
    "allowed_managed_keys",
    "delegated_auth_accessors",
    "identity_token_key",
)

TTL_FIELDS = ("default_lease_ttl", "max_lease_ttl")


def _kv_v2_alias(desired: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
    # kv-v2 is reported back as type "kv" with options.version "2"
    options = remote.get("options") or {}
    if (
        desired.get("type") == "kv-v2"
        and remote.get("type") == "kv"
        and options.get("version") == "2"
    ):
        remote["type"] = "kv-v2"
        if "version" not in (desired.get("options") or {}):
            remote["options"] = {k: v for k, v in options.items() if k != "version"}
    return remote


MOUNT_FIELDS = FieldTable(
    "mount",
    [
        FieldSpec(
            "path",
            FieldType.STRING,
            Mutability.MUTABLE,
            normalize=lambda v: v.strip("/") if isinstance(v, str) else v,
            required=True,
            description="Where the secret backend will be mounted",
        ),
        FieldSpec(
            "type",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            normalize=casefold,
            required=True,
            description="Type of the backend, such as 'aws'",
        ),
        FieldSpec("description", FieldType.STRING),
        FieldSpec(
            "default_lease_ttl",
            FieldType.INTEGER,
            normalize=duration_seconds,
            send_on_update=True,
            description="Default lease duration in seconds",
        ),
        FieldSpec(
            "max_lease_ttl",
            FieldType.INTEGER,
            normalize=duration_seconds,
            send_on_update=True,
            description="Maximum lease duration in seconds",
        ),
        # cannot be tuned after the mount exists
        FieldSpec("force_no_cache", FieldType.BOOL, Mutability.IMMUTABLE),
        FieldSpec("audit_non_hmac_request_keys", FieldType.LIST_OF_STRING),
        FieldSpec("audit_non_hmac_response_keys", FieldType.LIST_OF_STRING),
        FieldSpec("listing_visibility", FieldType.STRING, normalize=casefold),
        FieldSpec("passthrough_request_headers", FieldType.LIST_OF_STRING),
        FieldSpec("allowed_response_headers", FieldType.LIST_OF_STRING),
        FieldSpec("plugin_version", FieldType.STRING),
        FieldSpec(
            "allowed_managed_keys", FieldType.LIST_OF_STRING, normalize=sorted_strings
        ),
        FieldSpec("delegated_auth_accessors", FieldType.LIST_OF_STRING),
        FieldSpec("identity_token_key", FieldType.STRING),
        FieldSpec("options", FieldType.MAP_OF_STRING, send_on_update=True),
        FieldSpec("seal_wrap", FieldType.BOOL, Mutability.IMMUTABLE),
        FieldSpec(
            "external_entropy_access",
            FieldType.BOOL,
            Mutability.IMMUTABLE,
            default=False,
        ),
        FieldSpec("local", FieldType.BOOL, Mutability.IMMUTABLE, default=False),
        FieldSpec("accessor", FieldType.STRING, Mutability.COMPUTED_ONLY),
    ],
    aliases=_kv_v2_alias,
)


def is_mount_not_found(error: VaultAPIError) -> bool:
    """Vault answers 400 "no secret engine mount at ..." for missing mounts."""
    if error.status == 404:
        return True
    return error.status == 400 and any(
        "no secret engine mount" in message.lower() for message in error.errors
    )


def _ttl(seconds: int) -> str:
    return f"{seconds}s"


class MountTransport(Transport):
    """Transport for secrets engine mounts."""

    def __init__(
        self,
        client: VaultClient,
        fields: FieldTable = MOUNT_FIELDS,
        remount_poll_interval: float = 1.0,
    ):
        super().__init__(fields)
        self.client = client
        self.remount_poll_interval = remount_poll_interval

    def identify(self, desired: Dict[str, Any]) -> str:
        return desired["path"].strip("/")

    async def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        logger.debug(f"Reading mount {resource_id} from Vault")
        try:
            mount = await self.client.read(f"sys/mounts/{resource_id}")
        except VaultAPIError as e:
            if is_mount_not_found(e):
                mount = None
            else:
                raise

        if mount is None:
            logger.warning(f"Mount {resource_id!r} not found")
            return None

        config = mount.get("config") or {}
        state = {
            "path": resource_id,
            "type": mount.get("type"),
            "description": mount.get("description"),
            "options": mount.get("options") or {},
            "seal_wrap": mount.get("seal_wrap"),
            "external_entropy_access": mount.get("external_entropy_access"),
            "local": mount.get("local"),
            "accessor": mount.get("accessor"),
        }
        for name in CONFIG_FIELDS:
            if name in config:
                state[name] = config[name]
        # reported next to "type", older servers echo it under "config"
        if mount.get("plugin_version"):
            state["plugin_version"] = mount["plugin_version"]
        return state

    async def create(self, fields: Dict[str, Any]) -> str:
        path = self.identify(fields)
        config: Dict[str, Any] = {}
        for name in CONFIG_FIELDS:
            if name in fields:
                value = fields[name]
                config[name] = _ttl(value) if name in TTL_FIELDS else value

        mount_input = {
            "type": fields["type"],
            "description": fields.get("description", ""),
            "config": config,
            "local": fields.get("local", False),
            "options": fields.get("options", {}),
            "seal_wrap": fields.get("seal_wrap", False),
            "external_entropy_access": fields.get("external_entropy_access", False),
        }

        logger.debug(f"Creating mount {path} in Vault")
        await self.client.write(f"sys/mounts/{path}", mount_input)
        return path

    async def write(
        self, resource_id: str, payload: Dict[str, Any]
    ) -> Optional[str]:
        """
        Move and tune a mount.

        A changed ``path`` is applied first through ``sys/remount``; the
        remaining settings are then tuned at the new location.

        Returns:
            The new path if the mount was moved, otherwise None.
        """
        tune = dict(payload)
        new_path = tune.pop("path", resource_id).strip("/")
        moved = new_path != resource_id
        if moved:
            await self._remount(resource_id, new_path)
            resource_id = new_path

        tune = {
            name: _ttl(value) if name in TTL_FIELDS else value
            for name, value in tune.items()
        }
        if tune:
            logger.debug(f"Tuning mount {resource_id} in Vault")
            await self.client.write(f"sys/mounts/{resource_id}/tune", tune)
        return resource_id if moved else None

    async def _remount(self, old_path: str, new_path: str) -> None:
        logger.info(f"Remounting {old_path} to {new_path}")
        response = await self.client.write(
            "sys/remount", {"from": old_path, "to": new_path}
        )
        migration_id = (response or {}).get("migration_id")
        if not migration_id:
            return

        # the move runs in the background, wait until Vault reports an outcome
        while True:
            status = await self.client.read(f"sys/remount/status/{migration_id}")
            info = (status or {}).get("migration_info") or {}
            state = info.get("status")
            if state == "success":
                return
            if state != "in-progress":
                raise TransportError(
                    f"Remount of {old_path} to {new_path} ended with status "
                    f"{state!r} (migration {migration_id})"
                )
            logger.debug(f"Remount {migration_id} still in progress")
            await asyncio.sleep(self.remount_poll_interval)

    async def delete(self, resource_id: str) -> None:
        logger.debug(f"Unmounting {resource_id} from Vault")
        await self.client.delete(f"sys/mounts/{resource_id}")
