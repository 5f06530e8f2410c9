"""
Reconciler - Converges a remote resource onto its desired configuration.

Similar to a controller's reconcile step: read the remote state, compute
the smallest safe set of changes, and apply them. Planning is a pure
function; applying goes through a Transport and retries transient failures
with linear backoff.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from vaultsync.errors import ApplyError, ReplacementError
from vaultsync.fields import FieldTable, Mutability
from vaultsync.transport import Transport

logger = logging.getLogger(__name__)


class ActionType(Enum):
    """Kinds of remote action a plan can contain."""

    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"


class ReconcilePhase(Enum):
    """Phases a single reconciliation passes through."""

    START = "start"
    PLANNED = "planned"
    NOOP_DONE = "noop_done"
    UPDATING = "updating"
    UPDATE_DONE = "update_done"
    CREATING = "creating"
    CREATE_DONE = "create_done"
    DELETING = "deleting"
    DELETED = "deleted"
    REPLACE_DONE = "replace_done"
    FAILED = "failed"


@dataclass(frozen=True)
class Action:
    """One remote action. ``fields`` holds the changed values of an update."""

    type: ActionType
    fields: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def field_names(self) -> List[str]:
        return list(self.fields)

    def __str__(self) -> str:
        if self.type is ActionType.UPDATE:
            return f"update({', '.join(self.fields)})"
        if self.type is ActionType.REPLACE:
            return f"replace({self.reason})"
        return self.type.value


@dataclass
class ReconciliationPlan:
    """Ordered actions that bring one remote resource to its desired state."""

    fields: FieldTable
    actions: List[Action]
    desired: Dict[str, Any]
    remote: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> str:
        return self.fields.kind

    @property
    def action(self) -> Action:
        """The action that decides the outcome of the plan."""
        return self.actions[-1]

    @property
    def is_noop(self) -> bool:
        return all(a.type is ActionType.NOOP for a in self.actions)

    @property
    def requires_replacement(self) -> bool:
        return any(a.type is ActionType.REPLACE for a in self.actions)

    def describe(self) -> Dict[str, Any]:
        """Summarize the plan for display."""
        action = self.action
        changes = {}
        for name in action.fields:
            before = None if self.remote is None else self.remote.get(name)
            changes[name] = {"from": before, "to": action.fields[name]}
        return {
            "kind": self.kind,
            "action": action.type.value,
            "reason": action.reason,
            "changes": changes,
        }


def plan(
    desired: Dict[str, Any],
    remote: Optional[Dict[str, Any]],
    fields: FieldTable,
) -> ReconciliationPlan:
    """
    Compute the actions that converge ``remote`` onto ``desired``.

    Performs no I/O. Values are compared after normalization and type
    coercion, so equivalent spellings never show up as changes.

    Args:
        desired: Field values as declared by the caller.
        remote: Field values last read from the API, or None if the resource
            does not exist.
        fields: The field table of the resource kind.

    Returns:
        A plan holding a single NOOP, CREATE, UPDATE or REPLACE action.

    Raises:
        UnknownFieldError: If desired state uses an undeclared field.
        ValidationError: If a desired or remote value is malformed.
    """
    wanted = fields.coerce_desired(desired)

    if remote is None:
        logger.info(f"{fields.kind}: resource absent, planning create")
        create = Action(ActionType.CREATE, fields=fields.create_payload(wanted))
        return ReconciliationPlan(fields, [create], wanted, None)

    observed = fields.resolve_aliases(wanted, fields.coerce_remote(remote))
    changed: Dict[str, Any] = {}

    for spec in fields:
        if spec.computed_only or spec.name not in wanted:
            continue

        want = wanted[spec.name]
        if spec.name in observed:
            have = observed[spec.name]
        elif spec.has_default:
            have = spec.default_value()
        else:
            have = None

        if want == have:
            continue

        if spec.mutability is Mutability.IMMUTABLE or (
            spec.latch and have is True and want is False
        ):
            logger.info(
                f"{fields.kind}: '{spec.name}' changed from {have!r} to "
                f"{want!r}, replacement required"
            )
            replace = Action(ActionType.REPLACE, reason=spec.name)
            return ReconciliationPlan(fields, [replace], wanted, observed)

        changed[spec.name] = want

    if not changed:
        logger.info(f"{fields.kind}: no changes")
        return ReconciliationPlan(
            fields, [Action(ActionType.NOOP)], wanted, observed
        )

    logger.info(f"{fields.kind}: update in place: {', '.join(changed)}")
    update = Action(ActionType.UPDATE, fields=changed)
    return ReconciliationPlan(fields, [update], wanted, observed)


@dataclass
class RetryPolicy:
    """Bounded retry with linear backoff for transient transport errors."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds, multiplied by the attempt number
    max_delay: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt``."""
        return min(self.base_delay * attempt, self.max_delay)


@dataclass
class ReconcileResult:
    """Outcome of applying a plan."""

    resource_id: Optional[str]
    plan: Optional[ReconciliationPlan] = None
    phase: ReconcilePhase = ReconcilePhase.START
    calls: int = 0  # transport invocations, retries included

    @property
    def changed(self) -> bool:
        return self.plan is not None and not self.plan.is_noop


class Reconciler:
    """
    Applies reconciliation plans through a Transport.

    Holds no connection or resource state of its own; every call starts from
    scratch. Callers must serialize reconciliations of the same resource.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        allow_replace: bool = True,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.allow_replace = allow_replace

    async def reconcile(
        self,
        transport: Transport,
        fields: FieldTable,
        desired: Dict[str, Any],
        resource_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Run a full read, plan and apply cycle for one resource.

        Args:
            transport: Transport bound to the resource kind.
            fields: The field table of the resource kind.
            desired: Field values as declared by the caller.
            resource_id: Identifier of the resource. Derived from the desired
                state when omitted.

        Returns:
            ReconcileResult with the applied plan.
        """
        wanted = fields.coerce_desired(desired)
        result = ReconcileResult(resource_id=resource_id)
        resource_id, remote = await self.locate(transport, wanted, resource_id, result)

        reconciliation_plan = plan(desired, remote, fields)
        return await self.apply(reconciliation_plan, transport, resource_id, result)

    async def locate(
        self,
        transport: Transport,
        wanted: Dict[str, Any],
        resource_id: Optional[str] = None,
        result: Optional[ReconcileResult] = None,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Find the resource a desired state refers to and read it.

        An explicit identifier that no longer exists falls back to the one
        derived from the desired state, which is where an earlier run will
        have moved the resource.

        Args:
            transport: Transport bound to the resource kind.
            wanted: Coerced desired state.
            resource_id: Identifier given by the caller, if any.
            result: Result to keep accumulating into, if any.

        Returns:
            Tuple of (resource_id, remote state or None).
        """
        derived = transport.identify(wanted)
        resource_id = resource_id or derived
        if result is None:
            result = ReconcileResult(resource_id=resource_id)
        result.resource_id = resource_id

        remote = await self.read(transport, resource_id, result)
        if remote is None and resource_id != derived:
            logger.info(f"{resource_id} not found, trying {derived}")
            resource_id = derived
            result.resource_id = derived
            remote = await self.read(transport, resource_id, result)
        return resource_id, remote

    async def read(
        self,
        transport: Transport,
        resource_id: str,
        result: Optional[ReconcileResult] = None,
    ) -> Optional[Dict[str, Any]]:
        """Read remote state, retrying transient failures."""
        if result is None:
            result = ReconcileResult(resource_id=resource_id)
        logger.debug(f"Reading {resource_id}")
        return await self._call(transport, "read", result, transport.read, resource_id)

    async def apply(
        self,
        reconciliation_plan: ReconciliationPlan,
        transport: Transport,
        resource_id: Optional[str] = None,
        result: Optional[ReconcileResult] = None,
    ) -> ReconcileResult:
        """
        Execute a plan.

        Args:
            reconciliation_plan: The plan returned by ``plan``.
            transport: Transport bound to the resource kind.
            resource_id: Identifier of the existing resource. Derived from
                the desired state when omitted.
            result: Result to keep accumulating into, if any.

        Returns:
            ReconcileResult with the final phase and identifier.

        Raises:
            ApplyError: If a create or update call failed for good.
            ReplacementError: If a replacement was refused or only partially
                carried out.
        """
        if result is None:
            result = ReconcileResult(resource_id=resource_id)
        result.plan = reconciliation_plan
        result.phase = ReconcilePhase.PLANNED

        try:
            for action in reconciliation_plan.actions:
                await self._apply_action(action, reconciliation_plan, transport, result)
        except Exception:
            result.phase = ReconcilePhase.FAILED
            raise

        return result

    async def destroy(self, transport: Transport, resource_id: str) -> ReconcileResult:
        """Delete a resource, retrying transient failures."""
        result = ReconcileResult(resource_id=resource_id, phase=ReconcilePhase.DELETING)
        logger.info(f"Deleting {resource_id}")
        await self._call(transport, "delete", result, transport.delete, resource_id)
        result.phase = ReconcilePhase.DELETED
        return result

    async def _apply_action(
        self,
        action: Action,
        reconciliation_plan: ReconciliationPlan,
        transport: Transport,
        result: ReconcileResult,
    ) -> None:
        """Carry out a single action, advancing ``result.phase``."""
        desired = reconciliation_plan.desired
        fields = reconciliation_plan.fields

        if action.type is ActionType.NOOP:
            result.phase = ReconcilePhase.NOOP_DONE
            return

        if action.type is ActionType.CREATE:
            result.phase = ReconcilePhase.CREATING
            logger.info(f"Creating {fields.kind}")
            payload = fields.create_payload(desired)
            result.resource_id = await self._call(
                transport, action, result, transport.create, payload
            )
            result.phase = ReconcilePhase.CREATE_DONE
            logger.info(f"Created {fields.kind} {result.resource_id}")
            return

        if result.resource_id is None:
            result.resource_id = transport.identify(desired)

        if action.type is ActionType.UPDATE:
            result.phase = ReconcilePhase.UPDATING
            payload = transport.build_update_payload(action.fields, desired)
            logger.info(f"Updating {fields.kind} {result.resource_id}: {action}")
            new_id = await self._call(
                transport, action, result, transport.write, result.resource_id, payload
            )
            if new_id:
                logger.info(f"{fields.kind} {result.resource_id} moved to {new_id}")
                result.resource_id = new_id
            result.phase = ReconcilePhase.UPDATE_DONE
            return

        await self._replace(action, reconciliation_plan, transport, result)

    async def _replace(
        self,
        action: Action,
        reconciliation_plan: ReconciliationPlan,
        transport: Transport,
        result: ReconcileResult,
    ) -> None:
        """Delete the resource and create it again from the full desired state."""
        fields = reconciliation_plan.fields
        old_id = result.resource_id

        if not self.allow_replace:
            raise ReplacementError("plan", old_id, reason=action.reason)

        logger.warning(
            f"Replacing {fields.kind} {old_id}: '{action.reason}' cannot be "
            f"changed in place"
        )

        result.phase = ReconcilePhase.DELETING
        try:
            await self._call(transport, action, result, transport.delete, old_id)
        except ApplyError as e:
            raise ReplacementError("delete", old_id, e.cause, deleted=False) from e
        result.phase = ReconcilePhase.DELETED

        result.phase = ReconcilePhase.CREATING
        try:
            result.resource_id = await self._call(
                transport,
                action,
                result,
                transport.create,
                fields.create_payload(reconciliation_plan.desired),
            )
        except ApplyError as e:
            logger.error(
                f"{fields.kind} {old_id} was deleted but could not be recreated"
            )
            raise ReplacementError("create", old_id, e.cause, deleted=True) from e

        result.phase = ReconcilePhase.REPLACE_DONE
        logger.info(f"Replaced {fields.kind} {old_id} with {result.resource_id}")

    async def _call(
        self,
        transport: Transport,
        action: Any,
        result: ReconcileResult,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """
        Invoke a transport method, retrying transient failures.

        Raises:
            ApplyError: If the error is not retryable or the attempts are
                exhausted.
        """
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            result.calls += 1
            try:
                return await func(*args)
            except Exception as e:
                if attempt >= policy.max_attempts or not transport.is_retryable(e):
                    raise ApplyError(action, e, attempt) from e
                delay = policy.delay(attempt)
                logger.warning(
                    f"{action} attempt {attempt}/{policy.max_attempts} failed: "
                    f"{e}; retrying in {delay}s"
                )
                await asyncio.sleep(delay)
