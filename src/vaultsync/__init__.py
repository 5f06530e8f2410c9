"""
vaultsync - Idempotent reconciliation of Vault resources.

This package provides the field tables, the planner and the reconciler, plus
transports for a few Vault resource kinds.
"""

from vaultsync.errors import (
    ApplyError,
    ReconcileError,
    ReplacementError,
    TransportError,
    UnknownFieldError,
    ValidationError,
)
from vaultsync.fields import UNSET, FieldSpec, FieldTable, FieldType, Mutability
from vaultsync.reconciler import (
    Action,
    ActionType,
    ReconcilePhase,
    ReconcileResult,
    ReconciliationPlan,
    Reconciler,
    RetryPolicy,
    plan,
)
from vaultsync.transport import Transport

__all__ = [
    "Action",
    "ActionType",
    "ApplyError",
    "FieldSpec",
    "FieldTable",
    "FieldType",
    "Mutability",
    "ReconcileError",
    "ReconcilePhase",
    "ReconcileResult",
    "ReconciliationPlan",
    "Reconciler",
    "ReplacementError",
    "RetryPolicy",
    "Transport",
    "TransportError",
    "UNSET",
    "UnknownFieldError",
    "ValidationError",
    "plan",
]
