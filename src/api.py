"""
api.py

REST API layer for the Field-Service Work Order system.

Framework : FastAPI
Actor     : The acting principal is read from the `X-Actor-Id` header and
            passed to every command.  Token verification belongs to a
            gateway in front of this service.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /work-orders                        - create, list
  │   ├── /{id}                           - get, patch, cancel (DELETE)
  │   ├── /{id}/stages/complete           - evidence-gated stage completion
  │   ├── /{id}/initial-photos            - before-service site photos
  │   ├── /{id}/final-photos              - after-service site photos
  │   ├── /{id}/support                   - support request
  │   ├── /{id}/report                    - register generated report
  │   └── /{id}/audit                     - paginated audit history
  └── /support-requests                   - open support requests

Error handling
--------------
  validation                         → 422
  not_found, reference_not_found     → 404
  conflict                           → 409
  evidence_required                  → 422
  precondition_failed                → 412
  invariant_violation                → 500
  audit_write_failed                 → 500  (error carries entity_id)
  timeout                            → 503

Response envelope
-----------------
  Success  : { "ok": true,  "data": <payload>, "pagination"?: {...} }
  Error    : { "ok": false, "error": { "kind": "...", "message": "..." } }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Path, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    AttachPhotosCommand,
    CancelWorkOrderCommand,
    CompleteStageCommand,
    CreateWorkOrderCommand,
    RegisterReportCommand,
    RequestSupportCommand,
    UpdateWorkOrderCommand,
    WorkOrderFilters,
)
from config import Settings
from errors import AuditWriteFailed, ValidationError, WorkOrderError
from infrastructure import Runtime, build_runtime
from model import (
    MaintenanceType,
    Photo,
    PhotoSet,
    Priority,
    RequestMetadata,
    ServiceType,
    Stage,
    TaskType,
    WorkOrderStatus,
)

logger = logging.getLogger("workorders.api")

settings = Settings.from_env()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Field-Service Work Orders API",
    version="1.0.0",
    description=(
        "REST API for scheduled maintenance work orders: weighted, evidence-gated "
        "stages, derived progress and status, support requests, report registration "
        "and an append-only audit history."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

_STATUS_BY_KIND = {
    "validation": 422,
    "not_found": 404,
    "reference_not_found": 404,
    "conflict": 409,
    "evidence_required": 422,
    "precondition_failed": 412,
    "invariant_violation": 500,
    "audit_write_failed": 500,
    "timeout": 503,
}


def _error(status_code: int, kind: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"kind": kind, "message": message, **extra}},
    )


@app.exception_handler(WorkOrderError)
async def work_order_error_handler(request: Request, exc: WorkOrderError):
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s: %s", request.method, request.url.path, exc.kind, exc.message)
    extra = {"retryable": exc.retryable}
    if isinstance(exc, AuditWriteFailed):
        extra["entity_id"] = exc.entity_id
    return _error(status_code, exc.kind, exc.message, **extra)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return _error(422, "validation", "; ".join(messages))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(422, "validation", str(exc))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Process-wide in-memory runtime built from environment settings."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(settings)
    return _runtime


def get_actor(x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id")) -> Optional[str]:
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None


def _metadata(request: Request, notes: Optional[str] = None) -> RequestMetadata:
    return RequestMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        notes=notes,
    )


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any, pagination: Any = None) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        payload: Any = dataclasses.asdict(data)
    elif isinstance(data, list):
        payload = [dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item for item in data]
    else:
        payload = data
    body: Dict[str, Any] = {"ok": True, "data": payload}
    if pagination is not None:
        body["pagination"] = dataclasses.asdict(pagination)
    return body


def _enum_param(enum_cls, value: Optional[str], name: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        raise ValidationError(f"{name} must be one of: {sorted(e.value for e in enum_cls)}") from None


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _check_enum(enum_cls, v: Optional[str], name: str) -> Optional[str]:
    if v is None:
        return v
    valid = {e.value for e in enum_cls}
    if v.strip().lower() not in valid:
        raise ValueError(f"{name} must be one of: {sorted(valid)}")
    return v.strip().lower()


class StageTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="")
    weight: float


class CableInstalledRequest(BaseModel):
    utp: float = Field(default=0.0, ge=0)
    electrical: float = Field(default=0.0, ge=0)
    fiber: float = Field(default=0.0, ge=0)


class CreateWorkOrderRequest(BaseModel):
    task_type: str
    maintenance_type: str
    description: str = Field(..., min_length=1, max_length=4000)
    scheduled_date: date
    assigned_to: str = Field(..., min_length=1, max_length=200)
    priority: str
    location: str = Field(..., min_length=1, max_length=200)
    site_name: str = Field(..., min_length=1, max_length=200)
    device_name: str = Field(default="", max_length=200)
    service_type: Optional[str] = None
    observations: str = Field(default="")
    service_date: Optional[date] = None
    project_id: Optional[str] = None
    point_id: Optional[str] = None
    stages: Optional[List[StageTemplateRequest]] = Field(
        default=None, description="Custom stage template; the configured default is used when omitted."
    )
    damaged_equipment: List[str] = Field(default_factory=list)
    cable_installed: Optional[CableInstalledRequest] = None
    notes: Optional[str] = Field(default=None, description="Stored in the audit record metadata.")

    @field_validator("task_type")
    @classmethod
    def validate_task_type(cls, v: str) -> str:
        return _check_enum(TaskType, v, "task_type")

    @field_validator("maintenance_type")
    @classmethod
    def validate_maintenance_type(cls, v: str) -> str:
        return _check_enum(MaintenanceType, v, "maintenance_type")

    @field_validator("service_type")
    @classmethod
    def validate_service_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_enum(ServiceType, v, "service_type")

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _check_enum(Priority, v, "priority")


class PhotoRequest(BaseModel):
    name: str = Field(default="")
    data: Optional[str] = Field(default=None, description="Base64 payload.")
    reference: Optional[str] = Field(default=None, description="External URL.")
    caption: str = Field(default="")
    timestamp: Optional[datetime] = None

    def to_model(self) -> Photo:
        photo = Photo(name=self.name, data=self.data, reference=self.reference, caption=self.caption)
        if self.timestamp is not None:
            photo.timestamp = self.timestamp
        return photo


class CompleteStageRequest(BaseModel):
    stage_name: str = Field(..., min_length=1)
    photos: List[PhotoRequest] = Field(default_factory=list)
    notes: Optional[str] = None


class AttachPhotosRequest(BaseModel):
    photos: List[PhotoRequest] = Field(default_factory=list)
    notes: Optional[str] = None


class RequestSupportRequest(BaseModel):
    details: Optional[str] = Field(default=None, max_length=4000)
    notes: Optional[str] = None


class RegisterReportRequest(BaseModel):
    report_url: str = Field(..., min_length=1, max_length=2000)
    notes: Optional[str] = None


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Work orders
# ---------------------------------------------------------------------------

work_order_router = APIRouter(prefix="/work-orders", tags=["Work Orders"])


@work_order_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a work order",
    response_description="The created work order, in Pending status.",
)
def create_work_order(
    body: CreateWorkOrderRequest,
    request: Request,
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Create a work order with the configured stage template (or the supplied
    one).  Project and point ids are resolved and their name, type and
    coordinates copied onto the order.
    """
    cmd = CreateWorkOrderCommand(
        actor=actor,
        task_type=body.task_type,
        maintenance_type=body.maintenance_type,
        description=body.description,
        scheduled_date=body.scheduled_date,
        assigned_to=body.assigned_to,
        priority=body.priority,
        location=body.location,
        site_name=body.site_name,
        device_name=body.device_name,
        service_type=body.service_type,
        observations=body.observations,
        service_date=body.service_date,
        project_id=body.project_id,
        point_id=body.point_id,
        stages=(
            [Stage(name=s.name, description=s.description, weight=s.weight) for s in body.stages]
            if body.stages is not None else None
        ),
        damaged_equipment=body.damaged_equipment,
        cable_installed=body.cable_installed.model_dump() if body.cable_installed else None,
        metadata=_metadata(request, body.notes),
    )
    result = runtime.commands().create(cmd, runtime.uow())
    return _ok(result)


@work_order_router.get(
    "",
    summary="List work orders",
)
def list_work_orders(
    status_filter: Optional[str] = Query(
        default=None, alias="status",
        description="One of: pending, in_progress, finalized, cancelled",
    ),
    task_type: Optional[str] = Query(default=None),
    maintenance_type: Optional[str] = Query(default=None),
    priority: Optional[str] = Query(default=None),
    location: Optional[str] = Query(default=None),
    assigned_to: Optional[str] = Query(default=None, description="Case-insensitive substring"),
    project_id: Optional[str] = Query(default=None),
    point_id: Optional[str] = Query(default=None),
    scheduled_from: Optional[date] = Query(default=None),
    scheduled_to: Optional[date] = Query(default=None),
    search: Optional[str] = Query(
        default=None, description="Matches device, site, description, assignee and project name"
    ),
    include_cancelled: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="created_at"),
    sort_order: str = Query(default="desc"),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Cancelled work orders are excluded unless `status=cancelled` or
    `include_cancelled=true`.
    """
    filters = WorkOrderFilters(
        status=_enum_param(WorkOrderStatus, status_filter, "status"),
        task_type=_enum_param(TaskType, task_type, "task_type"),
        maintenance_type=_enum_param(MaintenanceType, maintenance_type, "maintenance_type"),
        priority=_enum_param(Priority, priority, "priority"),
        location=location,
        assigned_to=assigned_to,
        project_id=project_id,
        point_id=point_id,
        scheduled_from=scheduled_from,
        scheduled_to=scheduled_to,
        search=search,
        include_cancelled=include_cancelled,
    )
    result = runtime.queries().list(
        runtime.uow(), filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return _ok(result.items, result.pagination)


@work_order_router.get(
    "/{work_order_id}",
    summary="Get a work order by ID",
)
def get_work_order(
    work_order_id: str = Path(...),
    include_cancelled: bool = Query(default=False),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.queries().get(runtime.uow(), work_order_id, include_cancelled=include_cancelled)
    return _ok(result)


@work_order_router.patch(
    "/{work_order_id}",
    summary="Update descriptive fields of a work order",
)
def update_work_order(
    request: Request,
    work_order_id: str = Path(...),
    body: Dict[str, Any] = Body(
        ...,
        examples=[{"observations": "Replaced the PoE injector", "priority": "high"}],
    ),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Only descriptive fields are applied.  Status, stages, support and report
    fields are ignored here and listed under `ignored_fields` in the audit
    record; use the dedicated endpoints for those transitions.  A patch that
    changes nothing writes no audit record.
    """
    patch = dict(body)
    notes = patch.pop("notes", None)
    cmd = UpdateWorkOrderCommand(
        work_order_id=work_order_id,
        actor=actor,
        patch=patch,
        metadata=_metadata(request, notes),
    )
    result = runtime.commands().update(cmd, runtime.uow())
    return _ok(result)


@work_order_router.delete(
    "/{work_order_id}",
    summary="Cancel (soft-delete) a work order",
)
def cancel_work_order(
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Cancelling twice is a no-op.  Without X-Actor-Id the system actor is recorded."""
    cmd = CancelWorkOrderCommand(
        work_order_id=work_order_id, actor=actor, metadata=_metadata(request)
    )
    result = runtime.commands().cancel(cmd, runtime.uow())
    return _ok(result)


@work_order_router.post(
    "/{work_order_id}/stages/complete",
    summary="Complete a stage with photo evidence",
)
def complete_stage(
    body: CompleteStageRequest,
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """
    At least one photo is required.  Progress and status are recomputed from
    the stage weights.
    """
    cmd = CompleteStageCommand(
        work_order_id=work_order_id,
        stage_name=body.stage_name,
        evidence=[p.to_model() for p in body.photos],
        actor=actor,
        metadata=_metadata(request, body.notes),
    )
    result = runtime.commands().complete_stage(cmd, runtime.uow())
    return _ok(result)


def _attach(
    which: PhotoSet, work_order_id: str, body: AttachPhotosRequest,
    request: Request, actor: Optional[str], runtime: Runtime,
):
    cmd = AttachPhotosCommand(
        work_order_id=work_order_id,
        which=which,
        photos=[p.to_model() for p in body.photos],
        actor=actor,
        metadata=_metadata(request, body.notes),
    )
    return _ok(runtime.commands().attach_photos(cmd, runtime.uow()))


@work_order_router.post(
    "/{work_order_id}/initial-photos",
    summary="Attach site photos taken before the service",
)
def add_initial_photos(
    body: AttachPhotosRequest,
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Initial and final photos are recorded on the order but do not complete
    stages or count toward the report minimum.
    """
    return _attach(PhotoSet.INITIAL, work_order_id, body, request, actor, runtime)


@work_order_router.post(
    "/{work_order_id}/final-photos",
    summary="Attach site photos taken after the service",
)
def add_final_photos(
    body: AttachPhotosRequest,
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    return _attach(PhotoSet.FINAL, work_order_id, body, request, actor, runtime)


@work_order_router.post(
    "/{work_order_id}/support",
    summary="Request support for a work order",
)
def request_support(
    body: RequestSupportRequest,
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    cmd = RequestSupportCommand(
        work_order_id=work_order_id,
        actor=actor,
        details=body.details,
        metadata=_metadata(request, body.notes),
    )
    result = runtime.commands().request_support(cmd, runtime.uow())
    return _ok(result)


@work_order_router.post(
    "/{work_order_id}/report",
    summary="Register the generated service report",
)
def register_report(
    body: RegisterReportRequest,
    request: Request,
    work_order_id: str = Path(...),
    actor: Optional[str] = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Fails with 412 until the order carries the minimum number of photos."""
    cmd = RegisterReportCommand(
        work_order_id=work_order_id,
        report_url=body.report_url,
        actor=actor,
        metadata=_metadata(request, body.notes),
    )
    result = runtime.commands().register_report(cmd, runtime.uow())
    return _ok(result)


@work_order_router.get(
    "/{work_order_id}/audit",
    summary="View the audit history of a work order",
)
def get_audit_history(
    work_order_id: str = Path(...),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
):
    """Newest first.  Each record lists exactly the fields that changed."""
    result = runtime.queries().history(runtime.uow(), work_order_id, page=page, page_size=page_size)
    return _ok(result.items, result.pagination)


# ---------------------------------------------------------------------------
# Support requests
# ---------------------------------------------------------------------------

support_router = APIRouter(prefix="/support-requests", tags=["Support Requests"])


@support_router.get(
    "",
    summary="List open support requests",
)
def list_support_requests(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.queries().support_requests(runtime.uow(), page=page, limit=limit)
    return _ok(result.items, result.pagination)


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(work_order_router)
api_v1.include_router(support_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION - tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness check.",
    },
    {
        "name": "Work Orders",
        "description": (
            "Scheduled maintenance tasks tracked through weighted stages.  Status "
            "and progress are derived from completed stages and cannot be set "
            "directly.  Every mutation writes exactly one audit record."
        ),
    },
    {
        "name": "Support Requests",
        "description": "Work orders whose technician asked for support, newest first.",
    },
]

app.openapi_tags = tags_metadata
