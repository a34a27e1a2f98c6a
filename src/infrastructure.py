"""
infrastructure.py

In-memory implementation of the repository, Unit of Work and reference
lookup interfaces, plus the Runtime that wires them together.

Everything is stored in plain Python dicts keyed by id.  It is suitable for
local development, demos and integration testing without a real database.

Two Unit of Work flavours are provided:

  InMemoryUnitOfWork
      Writes land immediately; commit() and rollback() are no-ops.  Models a
      store without multi-collection transactions and is paired with the
      best-effort audit ledger.

  TransactionalInMemoryUnitOfWork
      Writes are staged per unit of work and merged into the shared store on
      commit(); rollback() discards them.  Paired with the transactional
      audit ledger.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_runtime() in api.py.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from application import (
    AbstractAuditLedger,
    AbstractAuditRecordRepository,
    AbstractReferenceLookup,
    AbstractUnitOfWork,
    AbstractWorkOrderRepository,
    EntityLocks,
    PointReference,
    ProjectReference,
    WorkOrderCommandService,
    WorkOrderQueryService,
)
from config import LEDGER_TRANSACTIONAL, Settings
from errors import ReferenceNotFound
from ledger import build_ledger
from service import LifecyclePolicy, WorkOrderLifecycle


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed fetch/put/all helpers."""

    def fetch(self, key: str):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def all(self) -> list:
        return list(self.values())


class _StagedStore(_Store):
    """
    Pending writes layered over a shared _Store.  Reads see pending writes
    first; flush() merges them into the shared store.
    """

    def __init__(self, base: _Store):
        super().__init__()
        self._base = base

    def fetch(self, key: str):
        if key in self:
            return self[key]
        return self._base.fetch(key)

    def all(self) -> list:
        merged = dict(self._base)
        merged.update(self)
        return list(merged.values())

    def flush(self) -> None:
        self._base.update(self)
        self.clear()


# ---------------------------------------------------------------------------
# Shared in-memory database
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.work_orders:   _Store = _Store()
        self.audit_records: _Store = _Store()
        self.commit_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Repository implementations
# Work orders are copied on the way in and out so callers never share state
# with the store.
# ---------------------------------------------------------------------------

class InMemoryWorkOrderRepository(AbstractWorkOrderRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, work_order_id):     return copy.deepcopy(self._s.fetch(work_order_id))
    def list_all(self):               return [copy.deepcopy(wo) for wo in self._s.all()]
    def save(self, work_order):       self._s.put(copy.deepcopy(work_order))


class InMemoryAuditRecordRepository(AbstractAuditRecordRepository):
    def __init__(self, store: _Store): self._s = store
    def add(self, record):            self._s.put(record)
    def list_for_entity(self, entity_type, entity_id):
        return [r for r in self._s.all() if r.entity_type == entity_type and r.entity_id == entity_id]


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps the in-memory repositories.  commit() and rollback() are no-ops
    because dict mutations are immediate; there is no transaction to manage.
    """
    supports_transactions = False

    def __init__(self, db: InMemoryDatabase):
        self.work_orders   = InMemoryWorkOrderRepository(db.work_orders)
        self.audit_records = InMemoryAuditRecordRepository(db.audit_records)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory


class TransactionalInMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Stages work orders and audit records and publishes both together on
    commit(), under the database commit lock.
    """
    supports_transactions = True

    def __init__(self, db: InMemoryDatabase):
        self._db = db
        self._staged_work_orders = _StagedStore(db.work_orders)
        self._staged_audit_records = _StagedStore(db.audit_records)
        self.work_orders   = InMemoryWorkOrderRepository(self._staged_work_orders)
        self.audit_records = InMemoryAuditRecordRepository(self._staged_audit_records)

    def commit(self) -> None:
        with self._db.commit_lock:
            self._staged_work_orders.flush()
            self._staged_audit_records.flush()

    def rollback(self) -> None:
        self._staged_work_orders.clear()
        self._staged_audit_records.clear()


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class InMemoryReferenceLookup(AbstractReferenceLookup):
    """Project and point catalogue.  Seeded by the owning subsystem (or tests)."""

    def __init__(self):
        self._projects: Dict[str, ProjectReference] = {}
        self._points: Dict[str, PointReference] = {}

    def register_project(self, project_id: str, name: str) -> ProjectReference:
        ref = ProjectReference(project_id=project_id, name=name)
        self._projects[project_id] = ref
        return ref

    def register_point(
        self, point_id: str, point_type: str, coordinates: Optional[Tuple[float, float]] = None
    ) -> PointReference:
        ref = PointReference(point_id=point_id, point_type=point_type, coordinates=coordinates)
        self._points[point_id] = ref
        return ref

    def resolve_project(self, project_id: str) -> ProjectReference:
        ref = self._projects.get(project_id)
        if ref is None:
            raise ReferenceNotFound(f"Project {project_id} not found.")
        return ref

    def resolve_point(self, point_id: str) -> PointReference:
        ref = self._points.get(point_id)
        if ref is None:
            raise ReferenceNotFound(f"Point {point_id} not found.")
        return ref


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------

@dataclass
class Runtime:
    """
    One process-wide set of collaborators.  The ledger strategy and the Unit
    of Work flavour always come from the same Settings.ledger_mode.
    """
    settings: Settings
    db: InMemoryDatabase
    references: InMemoryReferenceLookup
    lifecycle: WorkOrderLifecycle
    ledger: AbstractAuditLedger
    locks: EntityLocks = field(default_factory=EntityLocks)

    def uow(self) -> AbstractUnitOfWork:
        if self.settings.ledger_mode == LEDGER_TRANSACTIONAL:
            return TransactionalInMemoryUnitOfWork(self.db)
        return InMemoryUnitOfWork(self.db)

    def commands(self) -> WorkOrderCommandService:
        return WorkOrderCommandService(
            ledger=self.ledger,
            references=self.references,
            lifecycle=self.lifecycle,
            locks=self.locks,
            lock_timeout=self.settings.storage_timeout_seconds,
        )

    def queries(self) -> WorkOrderQueryService:
        return WorkOrderQueryService(ledger=self.ledger, lifecycle=self.lifecycle)


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    settings = settings or Settings()
    lifecycle = WorkOrderLifecycle(LifecyclePolicy.from_settings(settings))
    # Reject a bad STAGE_TEMPLATE at startup rather than on the first create.
    lifecycle.validate_stage_template(lifecycle.policy.build_stages())
    return Runtime(
        settings=settings,
        db=InMemoryDatabase(),
        references=InMemoryReferenceLookup(),
        lifecycle=lifecycle,
        ledger=build_ledger(settings),
    )
