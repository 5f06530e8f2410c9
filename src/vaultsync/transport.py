"""
Transport Base - Abstract interface to the API that owns a resource.

The reconciler never talks to the network itself. Every read and mutation
goes through a Transport, which also decides which errors are worth retrying
and what an update request has to look like.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from vaultsync.errors import TransportError
from vaultsync.fields import FieldTable

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({412, 429, 500, 502, 503, 504})


class Transport(ABC):
    """
    Abstract base class for resource transports.

    A transport is bound to one resource kind. Resource identifiers are
    opaque strings chosen by the transport (for Vault, the API path).
    """

    def __init__(self, fields: Optional[FieldTable] = None):
        self.fields = fields

    @abstractmethod
    def identify(self, desired: Dict[str, Any]) -> str:
        """
        Derive the resource identifier from a desired state.

        Args:
            desired: Coerced desired state.

        Returns:
            The identifier ``read``, ``write`` and ``delete`` expect.
        """
        pass

    @abstractmethod
    async def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        """
        Read the current remote state.

        Args:
            resource_id: The resource identifier.

        Returns:
            Field values as reported by the API, or None if the resource
            does not exist.
        """
        pass

    @abstractmethod
    async def write(
        self, resource_id: str, payload: Dict[str, Any]
    ) -> Optional[str]:
        """
        Update an existing resource in place.

        Args:
            resource_id: The resource identifier.
            payload: The payload built by ``build_update_payload``.

        Returns:
            The new identifier if the update moved the resource, otherwise
            None.
        """
        pass

    @abstractmethod
    async def delete(self, resource_id: str) -> None:
        """Delete a resource."""
        pass

    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> str:
        """
        Create a resource from a full desired state.

        Args:
            fields: Every settable field of the desired state.

        Returns:
            The identifier of the new resource.
        """
        pass

    def is_retryable(self, error: BaseException) -> bool:
        """
        Decide whether a failed call may succeed when repeated.

        Throttling, consistency (412) and server-side errors are transient,
        as are connection failures and timeouts.
        """
        if isinstance(error, TransportError):
            return error.status in RETRYABLE_STATUSES
        return isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError))

    def build_update_payload(
        self, changed: Dict[str, Any], desired: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Build the body of an in-place update.

        The default payload is the changed fields plus every field the table
        marks as ``send_on_update``. Transports for APIs that only accept the
        complete object override this.

        Args:
            changed: Changed mutable fields and their desired values.
            desired: The full coerced desired state.

        Returns:
            The payload passed to ``write``.
        """
        payload = dict(changed)
        if self.fields is not None:
            for name in self.fields.update_companions():
                if name in desired:
                    payload.setdefault(name, desired[name])
        return payload
