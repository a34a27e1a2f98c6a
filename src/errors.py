"""
errors.py

Error taxonomy for the Field-Service Work Order system.

Every error carries a machine-readable `kind` (surfaced verbatim in the API
error envelope) and a `retryable` flag.  Validation and referential errors
are raised before any write and never leave partial state behind; the only
error that can follow a committed mutation is AuditWriteFailed.
"""

from __future__ import annotations

from typing import Optional


class WorkOrderError(Exception):
    """Base class for all domain and application errors."""
    kind = "error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(WorkOrderError):
    """Missing or invalid input.  Nothing was persisted."""
    kind = "validation"


class NotFound(WorkOrderError):
    """The work order or the named stage does not exist."""
    kind = "not_found"


class ReferenceNotFound(WorkOrderError):
    """A project or point reference could not be resolved."""
    kind = "reference_not_found"


class Conflict(WorkOrderError):
    """The request collides with current state (e.g. duplicate support request)."""
    kind = "conflict"


class EvidenceRequired(WorkOrderError):
    """A stage cannot be completed without at least one photo."""
    kind = "evidence_required"


class PreconditionFailed(WorkOrderError):
    """A lifecycle precondition (e.g. minimum photo evidence) is not met."""
    kind = "precondition_failed"


class InvariantViolation(WorkOrderError):
    """
    A structural invariant is broken, e.g. a stage template whose weights do
    not sum to 1.0.  Indicates a programming or configuration error.
    """
    kind = "invariant_violation"


class AuditWriteFailed(WorkOrderError):
    """
    The entity mutation was committed but its audit record could not be
    written after all retries.  Operators must reconcile the missing entry.
    """
    kind = "audit_write_failed"

    def __init__(self, message: str, entity_id: str, attempts: int,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.entity_id = entity_id
        self.attempts = attempts
        self.cause = cause


class StorageTimeout(WorkOrderError):
    """A storage call or entity lock exceeded its deadline.  Safe to retry."""
    kind = "timeout"
    retryable = True
