"""
model.py

Domain models for the Field-Service Work Order system.

Entities
--------
- WorkOrder
- Stage
- Photo
- ProjectLink / PointLink   (weak references to external reference data)
- CableInstalled
- AuditRecord
- RequestMetadata

All models use Python dataclasses for clean, framework-agnostic definitions.
Identifiers are UUID strings so they travel unchanged through JSON.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


SYSTEM_ACTOR = "system"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class WorkOrderStatus(str, Enum):
    """
    Lifecycle status of a work order.

    Always derived from stage progress and the cancellation flag; there is
    no operation that sets it directly.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class MaintenanceType(str, Enum):
    PREVENTIVE = "preventive"
    CORRECTIVE = "corrective"


class TaskType(str, Enum):
    """Kind of work performed on the device."""
    REVIEW = "review"
    UPDATE = "update"
    CLEANING = "cleaning"
    REPAIR = "repair"
    INSTALLATION = "installation"


class ServiceType(str, Enum):
    """Service classification printed in the header of a service order."""
    CORRECTIVE = "corrective"
    PREVENTIVE = "preventive"
    INSTALLATION = "installation"
    UPDATE = "update"
    REVIEW = "review"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AuditAction(str, Enum):
    """Kind of mutation documented by an AuditRecord."""
    CREATE = "create"
    UPDATE = "update"
    STAGE_UPDATE = "stage_update"
    STATUS_CHANGE = "status_change"
    SUPPORT_REQUEST = "support_request"
    REPORT_REGISTERED = "report_registered"
    CANCEL = "cancel"


class PhotoSet(str, Enum):
    """Before/after photo sets kept on the work order itself, outside the stages."""
    INITIAL = "initial"
    FINAL = "final"


class EntityType(str, Enum):
    WORK_ORDER = "work_order"


# ---------------------------------------------------------------------------
# Evidence & Stages
# ---------------------------------------------------------------------------


@dataclass
class Photo:
    """
    Photographic evidence attached to a stage.

    The payload is opaque to the core: either inline base64 `data` or an
    external `reference` (URL).  Persistence and compression of the binary
    happen outside this system.
    """
    name: str = ""
    data: Optional[str] = None          # base64 payload
    reference: Optional[str] = None     # external URL
    caption: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)


@dataclass
class Stage:
    """
    A weighted, independently completable unit of work within a work order.

    `weight` is the share of total progress contributed when the stage is
    completed.  The weights of a work order's template sum to 1.0.
    A stage may only become `completed` in an operation that attaches
    at least one Photo.
    """
    name: str = ""
    description: str = ""
    weight: float = 0.0
    completed: bool = False
    photos: List[Photo] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Weak references to external reference data
# ---------------------------------------------------------------------------


@dataclass
class ProjectLink:
    """Link to an external project; `name` is copied at link time."""
    project_id: str
    name: str = ""


@dataclass
class PointLink:
    """
    Link to an external network point.

    `point_type` and `coordinates` (latitude, longitude) are copied at link
    time and are not refreshed if the point changes later.
    """
    point_id: str
    point_type: str = ""
    coordinates: Optional[Tuple[float, float]] = None


@dataclass
class CableInstalled:
    """Metres of cable installed during the service, by kind."""
    utp: float = 0.0
    electrical: float = 0.0
    fiber: float = 0.0

    @property
    def total(self) -> float:
        return self.utp + self.electrical + self.fiber


# ---------------------------------------------------------------------------
# Work Order
# ---------------------------------------------------------------------------


@dataclass
class WorkOrder:
    """
    A scheduled maintenance task tracked through a bounded lifecycle.

    Status is not stored: it is a function of stage progress and the sticky
    `cancelled` flag (see service.WorkOrderLifecycle.status).  `version`
    increases by one with every persisted mutation and lets clients tell a
    stale server response from a fresh one.
    """
    id: str = field(default_factory=_new_id)

    # Descriptors
    device_name: str = ""
    site_name: str = ""
    location: str = ""
    task_type: Optional[TaskType] = None
    maintenance_type: Optional[MaintenanceType] = None
    service_type: Optional[ServiceType] = None
    description: str = ""
    observations: str = ""
    priority: Optional[Priority] = None
    assigned_to: str = ""

    # Schedule
    scheduled_date: Optional[date] = None
    service_date: Optional[date] = None
    completed_date: Optional[datetime] = None   # set on transition into FINALIZED

    # Stage template with evidence
    stages: List[Stage] = field(default_factory=list)

    # Site photos taken before and after the service; not stage evidence
    initial_photos: List[Photo] = field(default_factory=list)
    final_photos: List[Photo] = field(default_factory=list)

    # Support & reporting
    support_requested: bool = False
    support_request_details: Optional[str] = None
    support_requested_at: Optional[datetime] = None
    has_generated_report: bool = False
    report_url: Optional[str] = None

    # Weak references (relation plus lookup, never ownership)
    project: Optional[ProjectLink] = None
    point: Optional[PointLink] = None

    # Service-order details
    damaged_equipment: List[str] = field(default_factory=list)
    cable_installed: CableInstalled = field(default_factory=CableInstalled)

    # Soft delete; terminal once set
    cancelled: bool = False

    # Bookkeeping
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def find_stage(self, name: str) -> Optional[Stage]:
        return next((s for s in self.stages if s.name == name), None)

    @property
    def photo_count(self) -> int:
        """Stage evidence only; initial and final site photos are not counted."""
        return sum(len(s.photos) for s in self.stages)

    def photo_set(self, which: PhotoSet) -> List[Photo]:
        return self.initial_photos if which == PhotoSet.INITIAL else self.final_photos


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass
class RequestMetadata:
    """Optional context of the request that caused a mutation."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    """
    Immutable record of one authoritative mutation.

    `changes` maps every field that actually changed to {"from": ..., "to": ...}.
    Records are written exclusively through the audit ledger and are never
    edited or deleted afterwards.
    """
    entity_type: EntityType
    entity_id: str
    action: AuditAction
    changes: Dict[str, Dict[str, Any]]
    performed_by: str
    sequence_number: int = 0                    # monotonically increasing per entity
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)
