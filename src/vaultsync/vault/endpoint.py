"""
Single-endpoint resources - Objects that live at one logical path.

Many Vault objects are created, replaced and read at the same path and only
accept the complete object on write. EndpointTransport handles all of them;
the resource kinds differ only in their path template and field table.
"""

import logging
from typing import Any, Dict, Optional

from vaultsync.fields import FieldSpec, FieldTable, FieldType, Mutability
from vaultsync.transport import Transport
from vaultsync.vault.client import VaultClient

logger = logging.getLogger(__name__)


class EndpointTransport(Transport):
    """
    Transport for objects stored whole at ``path_template``.

    ``id_field`` names the field interpolated into the template. It is part
    of the path, so it is never sent in the body.
    """

    def __init__(
        self,
        client: VaultClient,
        fields: FieldTable,
        path_template: str,
        id_field: str = "name",
    ):
        super().__init__(fields)
        self.client = client
        self.path_template = path_template
        self.id_field = id_field
        self._prefix = path_template.split("{", 1)[0]

    def identify(self, desired: Dict[str, Any]) -> str:
        return self.path_template.format(**{self.id_field: desired[self.id_field]})

    def _body(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in values.items() if k != self.id_field}

    async def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        logger.debug(f"Reading {resource_id} from Vault")
        data = await self.client.read(resource_id)
        if data is None:
            logger.warning(f"{resource_id!r} not found")
            return None

        state = dict(data)
        if resource_id.startswith(self._prefix):
            state[self.id_field] = resource_id[len(self._prefix) :]
        return state

    async def create(self, fields: Dict[str, Any]) -> str:
        path = self.identify(fields)
        logger.debug(f"Writing {path} to Vault")
        await self.client.write(path, self._body(fields))
        return path

    def build_update_payload(
        self, changed: Dict[str, Any], desired: Dict[str, Any]
    ) -> Dict[str, Any]:
        payload = self._body(self.fields.create_payload(desired))
        payload.update(self._body(changed))
        return payload

    async def write(self, resource_id: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Updating {resource_id} in Vault")
        await self.client.write(resource_id, payload)

    async def delete(self, resource_id: str) -> None:
        logger.debug(f"Deleting {resource_id} from Vault")
        await self.client.delete(resource_id)


PASSWORD_POLICY_PATH = "sys/policies/password/{name}"

PASSWORD_POLICY_FIELDS = FieldTable(
    "password_policy",
    [
        FieldSpec(
            "name",
            FieldType.STRING,
            Mutability.IMMUTABLE,
            required=True,
            description="Name of the password policy",
        ),
        FieldSpec(
            "policy",
            FieldType.STRING,
            normalize=lambda v: v.strip() if isinstance(v, str) else v,
            required=True,
            description="The password policy document in HCL",
        ),
    ],
)


def password_policy_transport(client: VaultClient) -> EndpointTransport:
    return EndpointTransport(client, PASSWORD_POLICY_FIELDS, PASSWORD_POLICY_PATH)
