"""
service.py

Service layer for the Field-Service Work Order system.

Responsibilities
----------------
Pure business logic over domain model instances (from model.py).  Nothing
here performs I/O: callers load and persist models through the repositories
and the audit ledger.

Services
--------
- LifecyclePolicy      – product policy: default stage template, minimum evidence
- WorkOrderLifecycle   – stage-template validation, progress, derived status,
                         evidence-gated stage completion, report precondition
- AuditService         – snapshotting work orders and computing field-level diffs

Design notes
------------
- Lifecycle operations never mutate their input; they return a new WorkOrder.
- Rule violations raise the typed errors from errors.py.
- The same lifecycle runs on the server (authoritative) and inside the client
  cache (optimistic), so both sides agree on progress and status.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from errors import Conflict, EvidenceRequired, InvariantViolation, NotFound, ValidationError
from model import (
    AuditAction,
    AuditRecord,
    EntityType,
    Photo,
    PhotoSet,
    RequestMetadata,
    Stage,
    WorkOrder,
    WorkOrderStatus,
    _utcnow,
)


DEFAULT_STAGE_TEMPLATE: List[Dict[str, Any]] = [
    {"name": "Arrival", "description": "Photo confirming arrival on site", "weight": 0.10},
    {"name": "Diagnosis", "description": "Identify the fault and request support if needed", "weight": 0.10},
    {"name": "Materials", "description": "Confirm materials are available or wait until gathered", "weight": 0.50},
    {"name": "Conclusion", "description": "Photo of the finished service", "weight": 0.30},
]


# ---------------------------------------------------------------------------
# LifecyclePolicy
# ---------------------------------------------------------------------------

@dataclass
class LifecyclePolicy:
    """
    Product policy knobs.  These are configuration, not algorithm: the
    template weights and the evidence threshold come from Settings.
    """
    stage_template: List[Dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_STAGE_TEMPLATE)
    )
    min_report_photos: int = 4
    weight_epsilon: float = 1e-6

    @classmethod
    def from_settings(cls, settings) -> "LifecyclePolicy":
        return cls(
            stage_template=settings.stage_template or copy.deepcopy(DEFAULT_STAGE_TEMPLATE),
            min_report_photos=settings.min_report_photos,
        )

    def build_stages(self) -> List[Stage]:
        """Return fresh, uncompleted Stage objects for the default template."""
        return [
            Stage(
                name=entry["name"],
                description=entry.get("description", ""),
                weight=float(entry["weight"]),
            )
            for entry in self.stage_template
        ]


# ---------------------------------------------------------------------------
# WorkOrderLifecycle
# ---------------------------------------------------------------------------

class WorkOrderLifecycle:
    """
    Pure computation over a WorkOrder snapshot.
    """

    def __init__(self, policy: Optional[LifecyclePolicy] = None):
        self.policy = policy or LifecyclePolicy()

    # --- Template -----------------------------------------------------------

    def validate_stage_template(self, stages: Sequence[Stage]) -> None:
        """
        Reject malformed stage templates.

        Raises InvariantViolation if any weight is outside (0, 1] or if the
        weights do not sum to 1.0 within policy.weight_epsilon.
        Raises ValidationError for an empty template or blank or duplicate
        stage names.
        """
        if not stages:
            raise ValidationError("A work order needs at least one stage.")
        names = set()
        for stage in stages:
            if not stage.name or not stage.name.strip():
                raise ValidationError("Every stage must have a name.")
            if stage.name in names:
                raise ValidationError(f"Duplicate stage name '{stage.name}'.")
            names.add(stage.name)
            if not (0.0 < stage.weight <= 1.0):
                raise InvariantViolation(
                    f"Stage '{stage.name}' has weight {stage.weight}; weights must be in (0, 1]."
                )
        total = math.fsum(s.weight for s in stages)
        if abs(total - 1.0) > self.policy.weight_epsilon:
            raise InvariantViolation(
                f"Stage weights must sum to 1.0, got {total:.6f}."
            )

    # --- Derived values -----------------------------------------------------

    def progress(self, work_order: WorkOrder) -> float:
        """Sum of the weights of completed stages, clamped to [0, 1]."""
        total = math.fsum(s.weight for s in work_order.stages if s.completed)
        if total >= 1.0 - self.policy.weight_epsilon:
            return 1.0
        return round(max(0.0, total), 9)

    def status(self, work_order: WorkOrder) -> WorkOrderStatus:
        if work_order.cancelled:
            return WorkOrderStatus.CANCELLED
        progress = self.progress(work_order)
        if progress >= 1.0:
            return WorkOrderStatus.FINALIZED
        if progress > 0.0:
            return WorkOrderStatus.IN_PROGRESS
        return WorkOrderStatus.PENDING

    def can_finalize_report(self, work_order: WorkOrder) -> bool:
        """True once the stage photo evidence reaches the policy minimum."""
        return work_order.photo_count >= self.policy.min_report_photos

    # --- Transitions --------------------------------------------------------

    def ensure_mutable(self, work_order: WorkOrder) -> None:
        """Cancelled work orders are terminal; any further mutation conflicts."""
        if work_order.cancelled:
            raise Conflict(f"Work order {work_order.id} is cancelled and can no longer change.")

    def complete_stage(
        self,
        work_order: WorkOrder,
        stage_name: str,
        evidence: Iterable[Photo],
        now: Optional[datetime] = None,
    ) -> WorkOrder:
        """
        Return a copy of `work_order` with `stage_name` completed and the
        evidence appended.

        completed_date is stamped only on the transition into FINALIZED;
        completing further evidence on an already finalized order keeps the
        original date.
        """
        if work_order.find_stage(stage_name) is None:
            raise NotFound(f"Stage '{stage_name}' not found on work order {work_order.id}.")
        photos = list(evidence or [])
        if not photos:
            raise EvidenceRequired(
                f"Stage '{stage_name}' cannot be completed without at least one photo."
            )

        was_finalized = self.status(work_order) == WorkOrderStatus.FINALIZED
        updated = copy.deepcopy(work_order)
        stage = updated.find_stage(stage_name)
        stage.photos.extend(copy.deepcopy(photos))
        stage.completed = True

        if not was_finalized and self.status(updated) == WorkOrderStatus.FINALIZED:
            updated.completed_date = now or _utcnow()
        return updated

    def attach_photos(self, work_order: WorkOrder, which: PhotoSet, evidence: Iterable[Photo]) -> WorkOrder:
        """
        Return a copy with `evidence` appended to the initial or final photo
        set.  These photos never complete a stage, move progress or count
        toward the report minimum.
        """
        photos = list(evidence or [])
        if not photos:
            raise EvidenceRequired(f"At least one {which.value} photo is required.")
        updated = copy.deepcopy(work_order)
        updated.photo_set(which).extend(copy.deepcopy(photos))
        return updated

    def cancel(self, work_order: WorkOrder) -> WorkOrder:
        updated = copy.deepcopy(work_order)
        updated.cancelled = True
        return updated


# ---------------------------------------------------------------------------
# AuditService
# ---------------------------------------------------------------------------

def _plain(value: Any) -> Any:
    """Convert a field value to a JSON-friendly, comparable form."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class AuditService:
    """
    Builds the field-level snapshots and diffs that AuditRecords carry.

    Snapshots deliberately leave out bookkeeping fields (version, updated_at,
    updated_by) and photo payloads; stages are flattened by name so a diff
    names the exact stage that moved.
    """

    _SCALAR_FIELDS = (
        "device_name",
        "site_name",
        "location",
        "task_type",
        "maintenance_type",
        "service_type",
        "description",
        "observations",
        "priority",
        "assigned_to",
        "scheduled_date",
        "service_date",
        "completed_date",
        "support_requested",
        "support_request_details",
        "has_generated_report",
        "report_url",
        "damaged_equipment",
    )

    def __init__(self, lifecycle: WorkOrderLifecycle):
        self._lifecycle = lifecycle

    def snapshot(self, work_order: Optional[WorkOrder]) -> Dict[str, Any]:
        if work_order is None:
            return {}
        snap: Dict[str, Any] = {
            name: _plain(getattr(work_order, name)) for name in self._SCALAR_FIELDS
        }
        snap["status"] = self._lifecycle.status(work_order).value
        snap["progress"] = self._lifecycle.progress(work_order)

        project = work_order.project
        snap["project_id"] = project.project_id if project else None
        snap["project_name"] = project.name if project else None
        point = work_order.point
        snap["point_id"] = point.point_id if point else None
        snap["point_type"] = point.point_type if point else None
        snap["point_coordinates"] = _plain(point.coordinates) if point and point.coordinates else None

        snap["initial_photo_count"] = len(work_order.initial_photos)
        snap["final_photo_count"] = len(work_order.final_photos)

        cable = work_order.cable_installed
        snap["cable_installed.utp"] = cable.utp
        snap["cable_installed.electrical"] = cable.electrical
        snap["cable_installed.fiber"] = cable.fiber

        for stage in work_order.stages:
            snap[f"stages[{stage.name}].completed"] = stage.completed
            snap[f"stages[{stage.name}].photo_count"] = len(stage.photos)
        return snap

    @staticmethod
    def diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Return {field: {"from", "to"}} for exactly the keys whose value changed."""
        changes: Dict[str, Dict[str, Any]] = {}
        for key in list(before.keys()) + [k for k in after.keys() if k not in before]:
            old = before.get(key)
            new = after.get(key)
            if old != new:
                changes[key] = {"from": old, "to": new}
        return changes

    @staticmethod
    def build_record(
        entity_type: EntityType,
        entity_id: str,
        action: AuditAction,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: str,
        metadata: Optional[RequestMetadata],
        sequence_number: int,
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        meta: Dict[str, Any] = {}
        if metadata is not None:
            meta = {
                k: v
                for k, v in (
                    ("ip_address", metadata.ip_address),
                    ("user_agent", metadata.user_agent),
                    ("notes", metadata.notes),
                )
                if v is not None
            }
        if extra:
            meta.update(extra)
        return AuditRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            changes=AuditService.diff(before, after),
            performed_by=actor,
            sequence_number=sequence_number,
            metadata=meta,
            created_at=_utcnow(),
        )
