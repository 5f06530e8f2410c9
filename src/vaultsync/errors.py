"""
Reconciliation errors.

Every error raised by the planner, the reconciler, or a transport derives
from ReconcileError and carries a human-readable ``message``.
"""

from typing import Any, List, Optional


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnknownFieldError(ReconcileError):
    """Raised when desired state references a field the table does not declare."""

    def __init__(self, field: str, kind: Optional[str] = None):
        self.field = field
        self.kind = kind
        where = f" for {kind}" if kind else ""
        super().__init__(f"Unknown field '{field}'{where}")


class ValidationError(ReconcileError):
    """Raised when a field value fails type coercion or its validator."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class ManifestError(ReconcileError):
    """Raised when a manifest document does not match the manifest schema."""


class TransportError(ReconcileError):
    """Raised by a transport when a remote call fails."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        errors: Optional[List[str]] = None,
    ):
        self.status = status
        self.errors = errors or []
        super().__init__(message)


class ApplyError(ReconcileError):
    """
    Raised when a transport call failed for good.

    Either the error was not retryable or the retry budget ran out. The
    action that was being applied and the last underlying error are kept.
    """

    def __init__(self, action: Any, cause: BaseException, attempts: int = 1):
        self.action = action
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"{action} failed after {attempts} attempt(s): {cause}"
        )


class ReplacementError(ReconcileError):
    """
    Raised when a replacement could not be carried out completely.

    ``step`` is "delete" or "create" (or "plan" when replacement was refused
    up front). ``deleted`` is True when the old resource is already gone and
    the new one does not exist yet.
    """

    def __init__(
        self,
        step: str,
        resource_id: Optional[str],
        cause: Optional[BaseException] = None,
        deleted: bool = False,
        reason: str = "",
    ):
        self.step = step
        self.resource_id = resource_id
        self.cause = cause
        self.deleted = deleted
        self.reason = reason
        detail = f": {cause}" if cause is not None else ""
        if step == "plan":
            text = (
                f"Replacement of {resource_id} required by '{reason}' "
                f"but replacement is not allowed"
            )
        else:
            text = f"Replacement of {resource_id} failed at {step} step{detail}"
            if deleted:
                text += " (resource deleted, not recreated)"
        super().__init__(text)
