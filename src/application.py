"""
application.py

Application layer for the Field-Service Work Order system.

Overview
--------
The application layer sits between the presentation layer (API / client)
and the domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) so no raw domain objects are
     leaked upward.
  2. Declaring abstract Repository, Unit of Work, reference-lookup and audit
     ledger interfaces so the application stays persistence-agnostic
     (implementations live in infrastructure.py and ledger.py).
  3. Implementing the Work Order Command Service, which enforces invariants,
     serializes writers per entity, and pairs every mutation with exactly one
     audit record via the ledger.
  4. Implementing the Query Service, a read-only path over the same store.

Structure
---------
DTOs
    PhotoDTO, StageDTO, WorkOrderDTO, AuditRecordDTO, SupportRequestDTO,
    PaginationDTO, PageDTO

Interfaces
    AbstractWorkOrderRepository
    AbstractAuditRecordRepository
    AbstractUnitOfWork
    AbstractReferenceLookup
    AbstractAuditLedger

Commands
    CreateWorkOrderCommand, UpdateWorkOrderCommand, CompleteStageCommand,
    AttachPhotosCommand, RequestSupportCommand, RegisterReportCommand,
    CancelWorkOrderCommand

Services
    WorkOrderCommandService
    WorkOrderQueryService

Design notes
------------
- Every command follows the same sequence: lock the entity id, load,
  validate, compute the new state with WorkOrderLifecycle, append to the
  ledger (which performs the entity write), return a DTO.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Errors bubble up as the typed errors from errors.py.
"""

from __future__ import annotations

import abc
import copy
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

from errors import (
    Conflict,
    NotFound,
    PreconditionFailed,
    StorageTimeout,
    ValidationError,
)
from model import (
    SYSTEM_ACTOR,
    AuditAction,
    AuditRecord,
    CableInstalled,
    EntityType,
    MaintenanceType,
    Photo,
    PhotoSet,
    PointLink,
    Priority,
    ProjectLink,
    RequestMetadata,
    ServiceType,
    Stage,
    TaskType,
    WorkOrder,
    WorkOrderStatus,
    _utcnow,
)
from service import AuditService, WorkOrderLifecycle

logger = logging.getLogger("workorders.application")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _coerce_enum(enum_cls: Type[Enum], value: Any, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        valid = sorted(e.value for e in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {valid}") from None


def _coerce_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD).") from None


def _coerce_text(value: Any, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string.")
    return value.strip()


def _coerce_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ValidationError(f"{field_name} must be a list of strings.")
    return [x.strip() for x in value]


def _coerce_cable(value: Any) -> CableInstalled:
    if isinstance(value, CableInstalled):
        cable = copy.deepcopy(value)
    elif isinstance(value, dict):
        try:
            cable = CableInstalled(
                utp=float(value.get("utp") or 0),
                electrical=float(value.get("electrical") or 0),
                fiber=float(value.get("fiber") or 0),
            )
        except (TypeError, ValueError):
            raise ValidationError("cable_installed values must be numbers.") from None
    else:
        raise ValidationError("cable_installed must be an object with utp, electrical and fiber.")
    if min(cable.utp, cable.electrical, cable.fiber) < 0:
        raise ValidationError("cable_installed values must not be negative.")
    return cable


def _require_actor(actor: Optional[str]) -> str:
    if actor is None or not str(actor).strip():
        raise ValidationError("An acting principal is required for this operation.")
    return str(actor)


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1.")
    if limit < 1:
        raise ValidationError("limit must be >= 1.")


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class PhotoDTO:
    id: str
    name: str
    data: Optional[str]
    reference: Optional[str]
    caption: str
    timestamp: str


@dataclass
class StageDTO:
    name: str
    description: str
    weight: float
    completed: bool
    photo_count: int
    photos: List[PhotoDTO]


@dataclass
class WorkOrderDTO:
    id: str
    device_name: str
    site_name: str
    location: str
    task_type: Optional[str]
    maintenance_type: Optional[str]
    service_type: Optional[str]
    description: str
    observations: str
    priority: Optional[str]
    assigned_to: str
    status: str
    progress: float
    scheduled_date: Optional[str]
    service_date: Optional[str]
    completed_date: Optional[str]
    stages: List[StageDTO]
    initial_photos: List[PhotoDTO]
    final_photos: List[PhotoDTO]
    photo_count: int
    has_minimum_required_photos: bool
    support_requested: bool
    support_request_details: Optional[str]
    support_requested_at: Optional[str]
    has_generated_report: bool
    report_url: Optional[str]
    project_id: Optional[str]
    project_name: Optional[str]
    point_id: Optional[str]
    point_type: Optional[str]
    point_coordinates: Optional[List[float]]
    damaged_equipment: List[str]
    cable_installed: Dict[str, float]
    total_cable_installed: float
    version: int
    created_by: Optional[str]
    updated_by: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class AuditRecordDTO:
    id: str
    entity_type: str
    entity_id: str
    sequence_number: int
    action: str
    changes: Dict[str, Dict[str, Any]]
    performed_by: str
    metadata: Dict[str, Any]
    created_at: str


@dataclass
class SupportRequestDTO:
    work_order_id: str
    details: Optional[str]
    requested_at: Optional[str]
    device_name: str
    site_name: str
    location: str
    status: str


@dataclass
class PaginationDTO:
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass
class PageDTO:
    items: List[Any]
    pagination: PaginationDTO


# ===========================================================================
# DTO ASSEMBLER
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    def __init__(self, lifecycle: WorkOrderLifecycle):
        self._lifecycle = lifecycle

    @staticmethod
    def photo(p: Photo) -> PhotoDTO:
        return PhotoDTO(
            id=p.id,
            name=p.name,
            data=p.data,
            reference=p.reference,
            caption=p.caption,
            timestamp=_fmt(p.timestamp),
        )

    def stage(self, s: Stage) -> StageDTO:
        return StageDTO(
            name=s.name,
            description=s.description,
            weight=s.weight,
            completed=s.completed,
            photo_count=len(s.photos),
            photos=[self.photo(p) for p in s.photos],
        )

    def work_order(self, wo: WorkOrder) -> WorkOrderDTO:
        cable = wo.cable_installed
        return WorkOrderDTO(
            id=wo.id,
            device_name=wo.device_name,
            site_name=wo.site_name,
            location=wo.location,
            task_type=wo.task_type.value if wo.task_type else None,
            maintenance_type=wo.maintenance_type.value if wo.maintenance_type else None,
            service_type=wo.service_type.value if wo.service_type else None,
            description=wo.description,
            observations=wo.observations,
            priority=wo.priority.value if wo.priority else None,
            assigned_to=wo.assigned_to,
            status=self._lifecycle.status(wo).value,
            progress=self._lifecycle.progress(wo),
            scheduled_date=_fmt_date(wo.scheduled_date),
            service_date=_fmt_date(wo.service_date),
            completed_date=_fmt(wo.completed_date),
            stages=[self.stage(s) for s in wo.stages],
            initial_photos=[self.photo(p) for p in wo.initial_photos],
            final_photos=[self.photo(p) for p in wo.final_photos],
            photo_count=wo.photo_count,
            has_minimum_required_photos=self._lifecycle.can_finalize_report(wo),
            support_requested=wo.support_requested,
            support_request_details=wo.support_request_details,
            support_requested_at=_fmt(wo.support_requested_at),
            has_generated_report=wo.has_generated_report,
            report_url=wo.report_url,
            project_id=wo.project.project_id if wo.project else None,
            project_name=wo.project.name if wo.project else None,
            point_id=wo.point.point_id if wo.point else None,
            point_type=wo.point.point_type if wo.point else None,
            point_coordinates=list(wo.point.coordinates) if wo.point and wo.point.coordinates else None,
            damaged_equipment=list(wo.damaged_equipment),
            cable_installed={"utp": cable.utp, "electrical": cable.electrical, "fiber": cable.fiber},
            total_cable_installed=cable.total,
            version=wo.version,
            created_by=wo.created_by,
            updated_by=wo.updated_by,
            created_at=_fmt(wo.created_at),
            updated_at=_fmt(wo.updated_at),
        )

    @staticmethod
    def audit_record(r: AuditRecord) -> AuditRecordDTO:
        return AuditRecordDTO(
            id=r.id,
            entity_type=r.entity_type.value,
            entity_id=r.entity_id,
            sequence_number=r.sequence_number,
            action=r.action.value,
            changes=copy.deepcopy(r.changes),
            performed_by=r.performed_by,
            metadata=dict(r.metadata),
            created_at=_fmt(r.created_at),
        )

    def support_request(self, wo: WorkOrder) -> SupportRequestDTO:
        return SupportRequestDTO(
            work_order_id=wo.id,
            details=wo.support_request_details,
            requested_at=_fmt(wo.support_requested_at),
            device_name=wo.device_name,
            site_name=wo.site_name,
            location=wo.location,
            status=self._lifecycle.status(wo).value,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractWorkOrderRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, work_order_id: str) -> Optional[WorkOrder]: ...
    @abc.abstractmethod
    def list_all(self) -> List[WorkOrder]: ...
    @abc.abstractmethod
    def save(self, work_order: WorkOrder) -> None: ...


class AbstractAuditRecordRepository(abc.ABC):
    @abc.abstractmethod
    def add(self, record: AuditRecord) -> None: ...
    @abc.abstractmethod
    def list_for_entity(self, entity_type: EntityType, entity_id: str) -> List[AuditRecord]: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups the repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.work_orders.save(work_order)
            uow.audit_records.add(record)

    Leaving the block normally commits; an exception rolls back and
    propagates.  `supports_transactions` tells the audit ledger whether the
    rollback actually undoes earlier writes.
    """
    work_orders: AbstractWorkOrderRepository
    audit_records: AbstractAuditRecordRepository
    supports_transactions: bool = False

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# EXTERNAL REFERENCE DATA
# ===========================================================================

@dataclass
class ProjectReference:
    project_id: str
    name: str


@dataclass
class PointReference:
    point_id: str
    point_type: str
    coordinates: Optional[Tuple[float, float]] = None   # (latitude, longitude)


class AbstractReferenceLookup(abc.ABC):
    """Project/Point reference data owned by another subsystem."""

    @abc.abstractmethod
    def resolve_project(self, project_id: str) -> ProjectReference:
        """Raise ReferenceNotFound if the project does not exist."""

    @abc.abstractmethod
    def resolve_point(self, point_id: str) -> PointReference:
        """Raise ReferenceNotFound if the point does not exist."""


# ===========================================================================
# AUDIT LEDGER
# ===========================================================================

class AbstractAuditLedger(abc.ABC):
    """
    Append-only store of diff records, paired atomically with the entity
    mutation they document.

    Concrete strategies (ledger.py) differ only in how `append` achieves the
    pairing; the history read path is shared.
    """

    @abc.abstractmethod
    def append(
        self,
        uow: AbstractUnitOfWork,
        entity_type: EntityType,
        entity_id: str,
        action: AuditAction,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: str,
        metadata: Optional[RequestMetadata],
        apply: Callable[[], None],
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        """
        Run `apply` (the entity write) and insert the diff record for
        before -> after as one unit, then return the written record.
        """

    def build_record(
        self,
        uow: AbstractUnitOfWork,
        entity_type: EntityType,
        entity_id: str,
        action: AuditAction,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: str,
        metadata: Optional[RequestMetadata],
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        existing = uow.audit_records.list_for_entity(entity_type, entity_id)
        next_seq = max((r.sequence_number for r in existing), default=0) + 1
        return AuditService.build_record(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            actor=actor,
            metadata=metadata,
            sequence_number=next_seq,
            extra=extra,
        )

    def history(
        self,
        uow: AbstractUnitOfWork,
        entity_type: EntityType,
        entity_id: str,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[AuditRecord], int]:
        """Return one page of records, newest first, and the total count."""
        _check_paging(page, page_size)
        records = sorted(
            uow.audit_records.list_for_entity(entity_type, entity_id),
            key=lambda r: (r.created_at, r.sequence_number),
            reverse=True,
        )
        start = (page - 1) * page_size
        return records[start:start + page_size], len(records)


# ===========================================================================
# PER-ENTITY LOCKING
# ===========================================================================

class EntityLocks:
    """
    Single-writer-per-entity registry.  Operations on the same id are
    serialized; different ids never contend.  An entry lives only while some
    caller holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def active(self) -> int:
        """Number of ids currently held or waited on."""
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise StorageTimeout(
                    f"Timed out after {timeout:.2f}s waiting for work order {key}."
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


# ===========================================================================
# COMMANDS
# ===========================================================================

@dataclass
class CreateWorkOrderCommand:
    actor: Optional[str]
    task_type: Any = None
    maintenance_type: Any = None
    description: str = ""
    scheduled_date: Any = None
    assigned_to: str = ""
    priority: Any = None
    location: str = ""
    site_name: str = ""
    device_name: str = ""
    service_type: Any = None
    observations: str = ""
    service_date: Any = None
    project_id: Optional[str] = None
    point_id: Optional[str] = None
    stages: Optional[List[Stage]] = None          # None -> policy default template
    damaged_equipment: List[str] = field(default_factory=list)
    cable_installed: Any = None
    metadata: Optional[RequestMetadata] = None


@dataclass
class UpdateWorkOrderCommand:
    work_order_id: str
    actor: Optional[str]
    patch: Dict[str, Any]
    metadata: Optional[RequestMetadata] = None


@dataclass
class CompleteStageCommand:
    work_order_id: str
    stage_name: str
    evidence: List[Photo]
    actor: Optional[str]
    metadata: Optional[RequestMetadata] = None


@dataclass
class AttachPhotosCommand:
    work_order_id: str
    which: PhotoSet
    photos: List[Photo]
    actor: Optional[str]
    metadata: Optional[RequestMetadata] = None


@dataclass
class RequestSupportCommand:
    work_order_id: str
    actor: Optional[str]
    details: Optional[str] = None
    metadata: Optional[RequestMetadata] = None


@dataclass
class RegisterReportCommand:
    work_order_id: str
    report_url: str
    actor: Optional[str]
    metadata: Optional[RequestMetadata] = None


@dataclass
class CancelWorkOrderCommand:
    work_order_id: str
    actor: Optional[str] = None     # None only for system-initiated cancellation
    metadata: Optional[RequestMetadata] = None


# ===========================================================================
# WORK ORDER COMMAND SERVICE
# ===========================================================================

class WorkOrderCommandService:
    """
    Orchestrates validated, audited mutations of work orders.

    Every public method runs under the entity's lock: load current state,
    validate input and references, compute the new state, hand the write to
    the audit ledger, return the new state as a DTO.
    """

    REQUIRED_FIELDS = (
        "task_type",
        "maintenance_type",
        "description",
        "scheduled_date",
        "assigned_to",
        "priority",
        "location",
        "site_name",
    )

    # field -> coercion applied to patch values
    UPDATABLE_FIELDS: Dict[str, Callable[[Any], Any]] = {
        "device_name": lambda v: _coerce_text(v, "device_name"),
        "site_name": lambda v: _coerce_text(v, "site_name"),
        "location": lambda v: _coerce_text(v, "location"),
        "task_type": lambda v: _coerce_enum(TaskType, v, "task_type"),
        "maintenance_type": lambda v: _coerce_enum(MaintenanceType, v, "maintenance_type"),
        "service_type": lambda v: _coerce_enum(ServiceType, v, "service_type"),
        "description": lambda v: _coerce_text(v, "description"),
        "observations": lambda v: _coerce_text(v, "observations"),
        "priority": lambda v: _coerce_enum(Priority, v, "priority"),
        "scheduled_date": lambda v: _coerce_date(v, "scheduled_date"),
        "service_date": lambda v: _coerce_date(v, "service_date"),
        "assigned_to": lambda v: _coerce_text(v, "assigned_to"),
        "damaged_equipment": lambda v: _coerce_list(v, "damaged_equipment"),
        "cable_installed": _coerce_cable,
    }
    LINK_FIELDS = ("project_id", "point_id")

    def __init__(
        self,
        ledger: AbstractAuditLedger,
        references: AbstractReferenceLookup,
        lifecycle: Optional[WorkOrderLifecycle] = None,
        locks: Optional[EntityLocks] = None,
        lock_timeout: float = 5.0,
    ):
        self._ledger = ledger
        self._references = references
        self._lifecycle = lifecycle or WorkOrderLifecycle()
        self._audit = AuditService(self._lifecycle)
        self._assembler = _Assembler(self._lifecycle)
        self._locks = locks if locks is not None else EntityLocks()
        self._lock_timeout = lock_timeout

    # --- Internal -----------------------------------------------------------

    def _lock(self, work_order_id: str, timeout: Optional[float]):
        return self._locks.hold(work_order_id, self._lock_timeout if timeout is None else timeout)

    @staticmethod
    def _load(uow: AbstractUnitOfWork, work_order_id: str) -> WorkOrder:
        work_order = uow.work_orders.get(work_order_id)
        if work_order is None:
            raise NotFound(f"Work order {work_order_id} not found.")
        return work_order

    def _link_project(self, project_id: str) -> ProjectLink:
        ref = self._references.resolve_project(project_id)
        return ProjectLink(project_id=ref.project_id, name=ref.name)

    def _link_point(self, point_id: str) -> PointLink:
        ref = self._references.resolve_point(point_id)
        return PointLink(point_id=ref.point_id, point_type=ref.point_type, coordinates=ref.coordinates)

    def _check_required(self, work_order: WorkOrder) -> None:
        missing = []
        for name in self.REQUIRED_FIELDS:
            value = getattr(work_order, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}.")

    def _persist(
        self,
        uow: AbstractUnitOfWork,
        before: Optional[WorkOrder],
        after: WorkOrder,
        action: AuditAction,
        actor: str,
        metadata: Optional[RequestMetadata],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditRecord]:
        """
        Stamp bookkeeping fields and write through the ledger.  Returns None
        without writing anything when the mutation changes nothing.
        """
        before_snap = self._audit.snapshot(before)
        after_snap = self._audit.snapshot(after)
        if before is not None and before_snap == after_snap:
            return None

        now = _utcnow()
        after.version = before.version + 1 if before else 1
        after.updated_at = now
        after.updated_by = actor
        record = self._ledger.append(
            uow,
            entity_type=EntityType.WORK_ORDER,
            entity_id=after.id,
            action=action,
            before=before_snap,
            after=after_snap,
            actor=actor,
            metadata=metadata,
            apply=lambda: uow.work_orders.save(after),
            extra=extra,
        )
        logger.info(
            "work order %s: %s by %s (v%d, %d field(s) changed)",
            after.id, action.value, actor, after.version, len(record.changes),
        )
        return record

    # --- Operations ---------------------------------------------------------

    def create(
        self, cmd: CreateWorkOrderCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        actor = _require_actor(cmd.actor)
        now = _utcnow()
        work_order = WorkOrder(
            device_name=(cmd.device_name or "").strip(),
            site_name=(cmd.site_name or "").strip(),
            location=(cmd.location or "").strip(),
            task_type=_coerce_enum(TaskType, cmd.task_type, "task_type"),
            maintenance_type=_coerce_enum(MaintenanceType, cmd.maintenance_type, "maintenance_type"),
            service_type=_coerce_enum(ServiceType, cmd.service_type, "service_type"),
            description=(cmd.description or "").strip(),
            observations=(cmd.observations or "").strip(),
            priority=_coerce_enum(Priority, cmd.priority, "priority"),
            assigned_to=(cmd.assigned_to or "").strip(),
            scheduled_date=_coerce_date(cmd.scheduled_date, "scheduled_date"),
            service_date=_coerce_date(cmd.service_date, "service_date"),
            damaged_equipment=_coerce_list(cmd.damaged_equipment, "damaged_equipment"),
            cable_installed=_coerce_cable(cmd.cable_installed) if cmd.cable_installed is not None else CableInstalled(),
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        self._check_required(work_order)

        if cmd.stages is not None:
            stages = [Stage(name=s.name, description=s.description, weight=float(s.weight)) for s in cmd.stages]
        else:
            stages = self._lifecycle.policy.build_stages()
        self._lifecycle.validate_stage_template(stages)
        work_order.stages = stages

        if cmd.project_id:
            work_order.project = self._link_project(cmd.project_id)
        if cmd.point_id:
            work_order.point = self._link_point(cmd.point_id)

        with self._lock(work_order.id, timeout):
            self._persist(uow, None, work_order, AuditAction.CREATE, actor, cmd.metadata)
        return self._assembler.work_order(work_order)

    def update(
        self, cmd: UpdateWorkOrderCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        """
        Apply whitelisted fields from `cmd.patch`.  Anything else (status,
        stages, report or support fields, unknown keys) is ignored with a
        warning.  A patch that changes nothing writes no audit record.
        """
        actor = _require_actor(cmd.actor)
        allowed = set(self.UPDATABLE_FIELDS) | set(self.LINK_FIELDS)
        ignored = sorted(k for k in cmd.patch if k not in allowed)
        if ignored:
            logger.warning(
                "work order %s: ignoring non-updatable field(s) %s", cmd.work_order_id, ignored
            )

        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            self._lifecycle.ensure_mutable(before)
            after = copy.deepcopy(before)

            for name, value in cmd.patch.items():
                if name in self.LINK_FIELDS and value is not None and not isinstance(value, str):
                    raise ValidationError(f"{name} must be a string.")
                if name in self.UPDATABLE_FIELDS:
                    setattr(after, name, self.UPDATABLE_FIELDS[name](value))
                elif name == "project_id":
                    current = after.project.project_id if after.project else None
                    if not value:
                        after.project = None
                    elif value != current:
                        after.project = self._link_project(value)
                elif name == "point_id":
                    current = after.point.point_id if after.point else None
                    if not value:
                        after.point = None
                    elif value != current:
                        after.point = self._link_point(value)
            self._check_required(after)

            extra = {"ignored_fields": ignored} if ignored else None
            record = self._persist(uow, before, after, AuditAction.UPDATE, actor, cmd.metadata, extra)
            if record is None:
                logger.info("work order %s: update is a no-op, nothing written", cmd.work_order_id)
                return self._assembler.work_order(before)
        return self._assembler.work_order(after)

    def complete_stage(
        self, cmd: CompleteStageCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        actor = _require_actor(cmd.actor)
        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            self._lifecycle.ensure_mutable(before)
            after = self._lifecycle.complete_stage(before, cmd.stage_name, cmd.evidence)
            self._persist(
                uow, before, after, AuditAction.STAGE_UPDATE, actor, cmd.metadata,
                {"stage": cmd.stage_name},
            )
        return self._assembler.work_order(after)

    def attach_photos(
        self, cmd: AttachPhotosCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        """Append site photos taken before or after the service."""
        actor = _require_actor(cmd.actor)
        which = _coerce_enum(PhotoSet, cmd.which, "which")
        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            self._lifecycle.ensure_mutable(before)
            after = self._lifecycle.attach_photos(before, which, cmd.photos)
            self._persist(
                uow, before, after, AuditAction.UPDATE, actor, cmd.metadata,
                {"photo_set": which.value, "photos_added": len(cmd.photos)},
            )
        return self._assembler.work_order(after)

    def request_support(
        self, cmd: RequestSupportCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        actor = _require_actor(cmd.actor)
        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            self._lifecycle.ensure_mutable(before)
            if before.support_requested:
                raise Conflict(f"Support was already requested for work order {before.id}.")
            after = copy.deepcopy(before)
            after.support_requested = True
            after.support_request_details = cmd.details
            after.support_requested_at = _utcnow()
            self._persist(uow, before, after, AuditAction.SUPPORT_REQUEST, actor, cmd.metadata)
        return self._assembler.work_order(after)

    def register_report(
        self, cmd: RegisterReportCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        actor = _require_actor(cmd.actor)
        if not cmd.report_url or not cmd.report_url.strip():
            raise ValidationError("report_url is required.")
        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            self._lifecycle.ensure_mutable(before)
            if not self._lifecycle.can_finalize_report(before):
                raise PreconditionFailed(
                    f"Work order {before.id} has {before.photo_count} photo(s); "
                    f"{self._lifecycle.policy.min_report_photos} are required before a report."
                )
            after = copy.deepcopy(before)
            after.has_generated_report = True
            after.report_url = cmd.report_url.strip()
            record = self._persist(uow, before, after, AuditAction.REPORT_REGISTERED, actor, cmd.metadata)
            if record is None:
                return self._assembler.work_order(before)
        return self._assembler.work_order(after)

    def cancel(
        self, cmd: CancelWorkOrderCommand, uow: AbstractUnitOfWork, timeout: Optional[float] = None
    ) -> WorkOrderDTO:
        """Soft-delete.  Cancelling an already cancelled order is a silent no-op."""
        actor = cmd.actor if cmd.actor and str(cmd.actor).strip() else SYSTEM_ACTOR
        with self._lock(cmd.work_order_id, timeout):
            before = self._load(uow, cmd.work_order_id)
            if before.cancelled:
                logger.info("work order %s: already cancelled, nothing written", before.id)
                return self._assembler.work_order(before)
            after = self._lifecycle.cancel(before)
            self._persist(uow, before, after, AuditAction.CANCEL, actor, cmd.metadata)
        return self._assembler.work_order(after)


# ===========================================================================
# QUERY SERVICE
# ===========================================================================

@dataclass
class WorkOrderFilters:
    status: Optional[WorkOrderStatus] = None
    task_type: Optional[TaskType] = None
    maintenance_type: Optional[MaintenanceType] = None
    priority: Optional[Priority] = None
    location: Optional[str] = None
    assigned_to: Optional[str] = None
    project_id: Optional[str] = None
    point_id: Optional[str] = None
    scheduled_from: Optional[date] = None
    scheduled_to: Optional[date] = None
    search: Optional[str] = None
    include_cancelled: bool = False


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class WorkOrderQueryService:
    """
    Read-only access to work orders, their audit history and the
    support-request projection.
    """

    SORT_FIELDS = (
        "created_at",
        "updated_at",
        "scheduled_date",
        "priority",
        "status",
        "progress",
        "site_name",
        "device_name",
        "location",
    )

    def __init__(self, ledger: AbstractAuditLedger, lifecycle: Optional[WorkOrderLifecycle] = None):
        self._ledger = ledger
        self._lifecycle = lifecycle or WorkOrderLifecycle()
        self._assembler = _Assembler(self._lifecycle)

    def _matches(self, wo: WorkOrder, f: WorkOrderFilters) -> bool:
        status = self._lifecycle.status(wo)
        if f.status is not None:
            if status != f.status:
                return False
        elif status == WorkOrderStatus.CANCELLED and not f.include_cancelled:
            return False
        if f.task_type is not None and wo.task_type != f.task_type:
            return False
        if f.maintenance_type is not None and wo.maintenance_type != f.maintenance_type:
            return False
        if f.priority is not None and wo.priority != f.priority:
            return False
        if f.location and wo.location.lower() != f.location.strip().lower():
            return False
        if f.assigned_to and f.assigned_to.strip().lower() not in wo.assigned_to.lower():
            return False
        if f.project_id and (wo.project is None or wo.project.project_id != f.project_id):
            return False
        if f.point_id and (wo.point is None or wo.point.point_id != f.point_id):
            return False
        if f.scheduled_from and (wo.scheduled_date is None or wo.scheduled_date < f.scheduled_from):
            return False
        if f.scheduled_to and (wo.scheduled_date is None or wo.scheduled_date > f.scheduled_to):
            return False
        if f.search:
            needle = f.search.strip().lower()
            haystack = [
                wo.device_name,
                wo.site_name,
                wo.description,
                wo.assigned_to,
                wo.project.name if wo.project else "",
            ]
            if not any(needle in (h or "").lower() for h in haystack):
                return False
        return True

    def _sort_value(self, wo: WorkOrder, sort_by: str) -> Any:
        if sort_by == "priority":
            return _PRIORITY_RANK.get(wo.priority) if wo.priority else None
        if sort_by == "status":
            return self._lifecycle.status(wo).value
        if sort_by == "progress":
            return self._lifecycle.progress(wo)
        value = getattr(wo, sort_by)
        return value.lower() if isinstance(value, str) else value

    def list(
        self,
        uow: AbstractUnitOfWork,
        filters: Optional[WorkOrderFilters] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PageDTO:
        _check_paging(page, limit)
        if sort_by not in self.SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {list(self.SORT_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'.")
        filters = filters or WorkOrderFilters()

        matched = [wo for wo in uow.work_orders.list_all() if self._matches(wo, filters)]
        present = [wo for wo in matched if self._sort_value(wo, sort_by) is not None]
        absent = [wo for wo in matched if self._sort_value(wo, sort_by) is None]
        present.sort(key=lambda wo: self._sort_value(wo, sort_by), reverse=(sort_order == "desc"))
        ordered = present + absent      # missing values always last

        start = (page - 1) * limit
        items = [self._assembler.work_order(wo) for wo in ordered[start:start + limit]]
        return PageDTO(
            items=items,
            pagination=PaginationDTO(
                total=len(ordered), page=page, limit=limit, total_pages=_total_pages(len(ordered), limit)
            ),
        )

    def get(
        self, uow: AbstractUnitOfWork, work_order_id: str, include_cancelled: bool = False
    ) -> WorkOrderDTO:
        work_order = uow.work_orders.get(work_order_id)
        if work_order is None or (work_order.cancelled and not include_cancelled):
            raise NotFound(f"Work order {work_order_id} not found.")
        return self._assembler.work_order(work_order)

    def history(
        self, uow: AbstractUnitOfWork, work_order_id: str, page: int = 1, page_size: int = 20
    ) -> PageDTO:
        if uow.work_orders.get(work_order_id) is None:
            raise NotFound(f"Work order {work_order_id} not found.")
        records, total = self._ledger.history(
            uow, EntityType.WORK_ORDER, work_order_id, page=page, page_size=page_size
        )
        return PageDTO(
            items=[_Assembler.audit_record(r) for r in records],
            pagination=PaginationDTO(
                total=total, page=page, limit=page_size, total_pages=_total_pages(total, page_size)
            ),
        )

    def support_requests(self, uow: AbstractUnitOfWork, page: int = 1, limit: int = 10) -> PageDTO:
        """
        Projection of non-cancelled work orders with an open support request,
        newest request first.  Rebuilt from the work orders on every call.
        """
        _check_paging(page, limit)
        rows = [
            wo for wo in uow.work_orders.list_all()
            if wo.support_requested and not wo.cancelled
        ]
        rows.sort(key=lambda wo: wo.support_requested_at or wo.created_at, reverse=True)
        start = (page - 1) * limit
        return PageDTO(
            items=[self._assembler.support_request(wo) for wo in rows[start:start + limit]],
            pagination=PaginationDTO(
                total=len(rows), page=page, limit=limit, total_pages=_total_pages(len(rows), limit)
            ),
        )
