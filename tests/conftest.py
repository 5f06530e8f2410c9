"""Pytest configuration and fixtures."""

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from vaultsync.errors import TransportError
from vaultsync.fields import FieldSpec, FieldTable, FieldType, Mutability
from vaultsync.reconciler import Reconciler, RetryPolicy
from vaultsync.transport import Transport


class FakeTransport(Transport):
    """
    In-memory transport that records every call.

    Errors queued in ``failures[method]`` are raised, oldest first, by the
    next calls to that method.
    """

    def __init__(self, fields: Optional[FieldTable] = None):
        super().__init__(fields)
        self.store: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, List[BaseException]] = {}

    def fail(self, method: str, *errors: BaseException) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, copy.deepcopy(args)))
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)

    def calls_to(self, method: str) -> List[Tuple[str, Any]]:
        return [call for call in self.calls if call[0] == method]

    def identify(self, desired: Dict[str, Any]) -> str:
        return desired["path"]

    async def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        self._record("read", resource_id)
        state = self.store.get(resource_id)
        return copy.deepcopy(state) if state is not None else None

    async def write(
        self, resource_id: str, payload: Dict[str, Any]
    ) -> Optional[str]:
        self._record("write", resource_id, payload)
        state = self.store.pop(resource_id)
        state.update(payload)
        new_id = self.identify(state)
        self.store[new_id] = state
        return new_id if new_id != resource_id else None

    async def delete(self, resource_id: str) -> None:
        self._record("delete", resource_id)
        self.store.pop(resource_id, None)

    async def create(self, fields: Dict[str, Any]) -> str:
        self._record("create", fields)
        resource_id = self.identify(fields)
        self.store[resource_id] = dict(fields)
        return resource_id


def transient_error() -> TransportError:
    return TransportError("service unavailable", status=503)


def fatal_error() -> TransportError:
    return TransportError("permission denied", status=403)


@pytest.fixture
def key_fields():
    """Field table with one immutable, one mutable and one latch field."""
    return FieldTable(
        "test_key",
        [
            FieldSpec("path", FieldType.STRING, Mutability.IMMUTABLE, required=True),
            FieldSpec("max_ttl", FieldType.INTEGER, default=0),
            FieldSpec("exportable", FieldType.BOOL, default=False, latch=True),
        ],
    )


@pytest.fixture
def transport(key_fields):
    return FakeTransport(key_fields)


@pytest.fixture
def reconciler():
    """Reconciler that retries three times without sleeping."""
    return Reconciler(retry_policy=RetryPolicy(max_attempts=3, base_delay=0))


@pytest.fixture
def sample_mount():
    """Mount as returned by GET sys/mounts/<path>."""
    return {
        "type": "kv",
        "description": "team secrets",
        "accessor": "kv_1a2b3c4d",
        "local": False,
        "seal_wrap": False,
        "external_entropy_access": False,
        "options": {"version": "2"},
        "config": {
            "default_lease_ttl": 0,
            "max_lease_ttl": 0,
            "force_no_cache": False,
            "listing_visibility": "hidden",
        },
    }


@pytest.fixture
def movable_fields():
    """Field table whose identifying path can change in place."""
    return FieldTable(
        "test_mount",
        [
            FieldSpec("path", FieldType.STRING, Mutability.MUTABLE, required=True),
            FieldSpec("max_ttl", FieldType.INTEGER, default=0),
        ],
    )


@pytest.fixture
def movable_transport(movable_fields):
    return FakeTransport(movable_fields)
