"""
Vault API client - Thin aiohttp wrapper around Vault's HTTP API.

Only the logical read/write/delete verbs are exposed; every transport in
this package is built on those three calls.
"""

import json
import logging
import ssl
from typing import Any, Dict, List, Optional, Union

import aiohttp

from vaultsync.config import VaultConfig
from vaultsync.errors import TransportError

logger = logging.getLogger(__name__)


class VaultAPIError(TransportError):
    """Raised when Vault answers a request with an error status."""

    def __init__(self, method: str, path: str, status: int, errors: List[str]):
        self.method = method
        self.path = path
        detail = "; ".join(errors) if errors else "no error detail"
        super().__init__(
            f"{method} {path} returned HTTP {status}: {detail}",
            status=status,
            errors=errors,
        )


class VaultClient:
    """
    Minimal asynchronous Vault client.

    A new HTTP session is opened per request, so the client holds no
    connection state and can be shared freely.
    """

    def __init__(self, config: VaultConfig):
        self.address = config.address.rstrip("/")
        self.token = config.token
        self.namespace = config.namespace
        self.timeout = config.timeout
        self._ssl = self._build_ssl(config)

    @staticmethod
    def _build_ssl(config: VaultConfig) -> Union[bool, ssl.SSLContext]:
        """Build the ``ssl`` argument for aiohttp from the TLS settings."""
        if config.skip_tls_verify:
            logger.warning("TLS verification disabled for Vault requests")
            return False
        if config.ca_cert_file:
            return ssl.create_default_context(cafile=config.ca_cert_file)
        return True

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Vault API requests."""
        headers = {"X-Vault-Request": "true"}
        if self.token:
            headers["X-Vault-Token"] = self.token
        if self.namespace:
            headers["X-Vault-Namespace"] = self.namespace
        return headers

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Send a request and decode the JSON body.

        Returns:
            The decoded response body, or None for an empty response.

        Raises:
            VaultAPIError: If Vault answers with a 4xx or 5xx status.
        """
        path = path.strip("/")
        url = f"{self.address}/v1/{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        logger.debug(f"{method} {url}")
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method,
                url,
                headers=self._get_headers(),
                json=payload,
                ssl=self._ssl,
            ) as response:
                text = await response.text()
                status = response.status

        body = None
        if text and text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError:
                # proxies in front of Vault answer errors with HTML
                if status < 400:
                    raise
                body = {"errors": [text.strip()]}

        if status >= 400:
            errors = body.get("errors", []) if isinstance(body, dict) else []
            raise VaultAPIError(method, path, status, errors)

        return body

    async def read(self, path: str) -> Optional[Dict[str, Any]]:
        """
        Read a logical path.

        Returns:
            The ``data`` object of the response, or None if nothing exists
            at the path.
        """
        try:
            body = await self._request("GET", path)
        except VaultAPIError as e:
            if e.status == 404:
                return None
            raise
        if body is None:
            return None
        return body.get("data")

    async def write(
        self, path: str, data: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Write to a logical path, returning the response ``data`` if any."""
        body = await self._request("POST", path, data)
        if body is None:
            return None
        return body.get("data")

    async def delete(self, path: str) -> None:
        """Delete a logical path."""
        await self._request("DELETE", path)
