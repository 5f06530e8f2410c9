"""Unit tests for the reconciler apply loop."""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from conftest import FakeTransport, fatal_error, transient_error
from vaultsync.errors import (
    ApplyError,
    ReplacementError,
    TransportError,
    ValidationError,
)
from vaultsync.reconciler import (
    Action,
    ActionType,
    ReconcilePhase,
    ReconcileResult,
    Reconciler,
    RetryPolicy,
    plan,
)
from vaultsync.vault.mount import MOUNT_FIELDS

# ==================== RetryPolicy tests ====================


class TestRetryPolicy:
    """Tests for linear backoff."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.delay(1) == 1.0
        assert policy.delay(2) == 2.0

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=20, base_delay=3.0, max_delay=10.0)
        assert policy.delay(3) == 9.0
        assert policy.delay(4) == 10.0
        assert policy.delay(15) == 10.0

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError, match="at least 1"):
            RetryPolicy(max_attempts=0)


class TestActions:
    """Tests for action and result helpers."""

    def test_action_str(self):
        assert str(Action(ActionType.NOOP)) == "noop"
        assert str(Action(ActionType.UPDATE, fields={"a": 1, "b": 2})) == "update(a, b)"
        assert str(Action(ActionType.REPLACE, reason="path")) == "replace(path)"

    def test_result_changed(self, key_fields):
        result = ReconcileResult(resource_id="a")
        assert not result.changed
        result.plan = plan({"path": "a"}, {"path": "a"}, key_fields)
        assert not result.changed
        result.plan = plan({"path": "a", "max_ttl": 1}, {"path": "a"}, key_fields)
        assert result.changed


# ==================== Transport default tests ====================


class TestTransportDefaults:
    """Tests for the default retry classification and update payload."""

    @pytest.mark.parametrize("status", [412, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, transport, status):
        assert transport.is_retryable(TransportError("x", status=status))

    @pytest.mark.parametrize("status", [None, 400, 403, 404])
    def test_fatal_statuses(self, transport, status):
        assert not transport.is_retryable(TransportError("x", status=status))

    def test_connection_errors_retryable(self, transport):
        assert transport.is_retryable(aiohttp.ClientConnectionError("reset"))
        assert transport.is_retryable(asyncio.TimeoutError())

    def test_other_errors_not_retryable(self, transport):
        assert not transport.is_retryable(KeyError("path"))

    def test_update_payload_includes_companions(self):
        transport = FakeTransport(MOUNT_FIELDS)
        desired = {
            "path": "secret",
            "type": "kv",
            "description": "old",
            "default_lease_ttl": 60,
            "max_lease_ttl": 3600,
        }
        payload = transport.build_update_payload({"description": "new"}, desired)
        assert payload == {
            "description": "new",
            "default_lease_ttl": 60,
            "max_lease_ttl": 3600,
        }

    def test_update_payload_without_field_table(self):
        transport = FakeTransport()
        assert transport.build_update_payload({"a": 1}, {"a": 1, "b": 2}) == {"a": 1}


# ==================== Apply tests ====================


@pytest.mark.asyncio
class TestApply:
    """Tests for applying plans through a transport."""

    async def test_noop_makes_no_calls(self, reconciler, transport, key_fields):
        remote = {"path": "a", "max_ttl": 100, "exportable": False}
        noop = plan(dict(remote), remote, key_fields)

        first = await reconciler.apply(noop, transport, "a")
        second = await reconciler.apply(noop, transport, "a")

        assert transport.calls == []
        assert first.phase is ReconcilePhase.NOOP_DONE
        assert second.phase is ReconcilePhase.NOOP_DONE
        assert first.calls == 0

    async def test_update_writes_changed(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100, "exportable": False}
        update = plan(
            {"path": "a", "max_ttl": 200}, transport.store["a"], key_fields
        )

        result = await reconciler.apply(update, transport, "a")

        assert transport.calls == [("write", ("a", {"max_ttl": 200}))]
        assert result.phase is ReconcilePhase.UPDATE_DONE
        assert result.calls == 1
        assert transport.store["a"]["max_ttl"] == 200

    async def test_retry_then_success(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100}
        transport.fail("write", transient_error(), transient_error())
        update = plan({"path": "a", "max_ttl": 200}, transport.store["a"], key_fields)

        result = await reconciler.apply(update, transport, "a")

        assert len(transport.calls_to("write")) == 3
        assert result.calls == 3
        assert result.phase is ReconcilePhase.UPDATE_DONE

    async def test_retries_exhausted(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100}
        transport.fail("write", *[transient_error() for _ in range(3)])
        update = plan({"path": "a", "max_ttl": 200}, transport.store["a"], key_fields)
        result = ReconcileResult(resource_id="a")

        with pytest.raises(ApplyError) as exc_info:
            await reconciler.apply(update, transport, "a", result)

        assert exc_info.value.attempts == 3
        assert exc_info.value.cause.status == 503
        assert exc_info.value.action.type is ActionType.UPDATE
        assert "failed after 3 attempt(s)" in exc_info.value.message
        assert len(transport.calls_to("write")) == 3
        assert result.phase is ReconcilePhase.FAILED

    async def test_fatal_error_not_retried(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100}
        transport.fail("write", fatal_error())
        update = plan({"path": "a", "max_ttl": 200}, transport.store["a"], key_fields)

        with pytest.raises(ApplyError) as exc_info:
            await reconciler.apply(update, transport, "a")

        assert exc_info.value.attempts == 1
        assert len(transport.calls_to("write")) == 1

    async def test_backoff_delays(self, transport, key_fields):
        reconciler = Reconciler(RetryPolicy(max_attempts=3, base_delay=1.0))
        transport.store["a"] = {"path": "a", "max_ttl": 100}
        transport.fail("write", transient_error(), transient_error())
        update = plan({"path": "a", "max_ttl": 200}, transport.store["a"], key_fields)

        with patch(
            "vaultsync.reconciler.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await reconciler.apply(update, transport, "a")

        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    async def test_create(self, reconciler, transport, key_fields):
        create = plan({"path": "a", "max_ttl": 5}, None, key_fields)

        result = await reconciler.apply(create, transport)

        assert result.phase is ReconcilePhase.CREATE_DONE
        assert result.resource_id == "a"
        assert transport.store["a"] == {"path": "a", "max_ttl": 5, "exportable": False}

    async def test_update_derives_resource_id(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100}
        update = plan({"path": "a", "max_ttl": 200}, transport.store["a"], key_fields)

        result = await reconciler.apply(update, transport)

        assert result.phase is ReconcilePhase.UPDATE_DONE
        assert result.resource_id == "a"
        assert transport.calls == [("write", ("a", {"max_ttl": 200}))]
        assert transport.store["a"]["max_ttl"] == 200

    async def test_replace_derives_resource_id(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "exportable": True}
        replace = plan(
            {"path": "a", "exportable": False}, transport.store["a"], key_fields
        )

        result = await reconciler.apply(replace, transport)

        assert result.phase is ReconcilePhase.REPLACE_DONE
        assert transport.calls[0] == ("delete", ("a",))

    async def test_update_adopts_moved_resource_id(
        self, reconciler, movable_transport, movable_fields
    ):
        remote = {"path": "old", "max_ttl": 5}
        movable_transport.store["old"] = dict(remote)
        update = plan({"path": "new", "max_ttl": 5}, remote, movable_fields)
        assert update.action.type is ActionType.UPDATE

        result = await reconciler.apply(update, movable_transport, "old")

        assert result.phase is ReconcilePhase.UPDATE_DONE
        assert result.resource_id == "new"
        assert movable_transport.calls == [("write", ("old", {"path": "new"}))]
        assert set(movable_transport.store) == {"new"}


@pytest.mark.asyncio
class TestReplace:
    """Tests for forced replacement."""

    async def test_delete_then_create(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100, "exportable": True}
        replace = plan(
            {"path": "a", "max_ttl": 100, "exportable": False},
            transport.store["a"],
            key_fields,
        )

        result = await reconciler.apply(replace, transport, "a")

        assert [c[0] for c in transport.calls] == ["delete", "create"]
        assert result.phase is ReconcilePhase.REPLACE_DONE
        assert transport.store["a"]["exportable"] is False

    async def test_create_step_fails(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 100, "exportable": True}
        transport.fail("create", fatal_error())
        replace = plan(
            {"path": "a", "exportable": False}, transport.store["a"], key_fields
        )

        with pytest.raises(ReplacementError) as exc_info:
            await reconciler.apply(replace, transport, "a")

        error = exc_info.value
        assert error.step == "create"
        assert error.deleted is True
        assert error.resource_id == "a"
        assert error.cause.status == 403
        assert "resource deleted, not recreated" in error.message
        assert await transport.read("a") is None

    async def test_delete_step_fails(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "exportable": True}
        transport.fail("delete", fatal_error())
        replace = plan(
            {"path": "a", "exportable": False}, transport.store["a"], key_fields
        )

        with pytest.raises(ReplacementError) as exc_info:
            await reconciler.apply(replace, transport, "a")

        assert exc_info.value.step == "delete"
        assert exc_info.value.deleted is False
        assert transport.calls_to("create") == []
        assert "a" in transport.store

    async def test_replace_not_allowed(self, transport, key_fields):
        reconciler = Reconciler(allow_replace=False)
        transport.store["a"] = {"path": "a", "exportable": True}
        replace = plan(
            {"path": "a", "exportable": False}, transport.store["a"], key_fields
        )

        with pytest.raises(ReplacementError) as exc_info:
            await reconciler.apply(replace, transport, "a")

        assert exc_info.value.step == "plan"
        assert exc_info.value.reason == "exportable"
        assert "replacement is not allowed" in exc_info.value.message
        assert transport.calls == []

    async def test_replace_retries_transient_delete(
        self, reconciler, transport, key_fields
    ):
        transport.store["a"] = {"path": "a", "exportable": True}
        transport.fail("delete", transient_error())
        replace = plan(
            {"path": "a", "exportable": False}, transport.store["a"], key_fields
        )

        result = await reconciler.apply(replace, transport, "a")

        assert [c[0] for c in transport.calls] == ["delete", "delete", "create"]
        assert result.calls == 3


@pytest.mark.asyncio
class TestReconcile:
    """Tests for the full read, plan and apply cycle."""

    async def test_creates_missing_resource(self, reconciler, transport, key_fields):
        result = await reconciler.reconcile(transport, key_fields, {"path": "a"})

        assert [c[0] for c in transport.calls] == ["read", "create"]
        assert result.phase is ReconcilePhase.CREATE_DONE
        assert result.plan.action.type is ActionType.CREATE

    async def test_second_run_is_noop(self, reconciler, transport, key_fields):
        desired = {"path": "a", "max_ttl": "300"}
        await reconciler.reconcile(transport, key_fields, desired)
        transport.calls.clear()

        result = await reconciler.reconcile(transport, key_fields, desired)

        assert [c[0] for c in transport.calls] == ["read"]
        assert result.phase is ReconcilePhase.NOOP_DONE
        assert not result.changed

    async def test_drift_is_corrected(self, reconciler, transport, key_fields):
        transport.store["a"] = {"path": "a", "max_ttl": 999, "exportable": False}

        result = await reconciler.reconcile(
            transport, key_fields, {"path": "a", "max_ttl": 100}
        )

        assert result.phase is ReconcilePhase.UPDATE_DONE
        assert transport.store["a"]["max_ttl"] == 100

    async def test_explicit_resource_id(self, reconciler, transport, key_fields):
        transport.store["custom"] = {"path": "a"}
        result = await reconciler.reconcile(
            transport, key_fields, {"path": "a"}, resource_id="custom"
        )
        assert transport.calls[0] == ("read", ("custom",))
        assert result.phase is ReconcilePhase.NOOP_DONE

    async def test_rename_moves_resource(
        self, reconciler, movable_transport, movable_fields
    ):
        movable_transport.store["old"] = {"path": "old", "max_ttl": 60}

        result = await reconciler.reconcile(
            movable_transport, movable_fields, {"path": "new", "max_ttl": 60}, "old"
        )

        assert result.plan.action.type is ActionType.UPDATE
        assert result.resource_id == "new"
        assert movable_transport.store == {"new": {"path": "new", "max_ttl": 60}}

    async def test_rerun_after_rename_finds_new_location(
        self, reconciler, movable_transport, movable_fields
    ):
        movable_transport.store["new"] = {"path": "new", "max_ttl": 60}

        result = await reconciler.reconcile(
            movable_transport, movable_fields, {"path": "new", "max_ttl": 60}, "old"
        )

        assert movable_transport.calls == [("read", ("old",)), ("read", ("new",))]
        assert result.phase is ReconcilePhase.NOOP_DONE
        assert result.resource_id == "new"

    async def test_missing_everywhere_is_created(
        self, reconciler, movable_transport, movable_fields
    ):
        result = await reconciler.reconcile(
            movable_transport, movable_fields, {"path": "new"}, "old"
        )

        assert [c[0] for c in movable_transport.calls] == ["read", "read", "create"]
        assert result.resource_id == "new"

    async def test_validation_error_before_any_call(
        self, reconciler, transport, key_fields
    ):
        with pytest.raises(ValidationError):
            await reconciler.reconcile(
                transport, key_fields, {"path": "a", "max_ttl": "never"}
            )
        assert transport.calls == []

    async def test_read_failure(self, reconciler, transport, key_fields):
        transport.fail("read", fatal_error())
        with pytest.raises(ApplyError) as exc_info:
            await reconciler.reconcile(transport, key_fields, {"path": "a"})
        assert exc_info.value.action == "read"

    async def test_destroy(self, reconciler, transport):
        transport.store["a"] = {"path": "a"}
        transport.fail("delete", transient_error())

        result = await reconciler.destroy(transport, "a")

        assert result.phase is ReconcilePhase.DELETED
        assert result.calls == 2
        assert "a" not in transport.store
