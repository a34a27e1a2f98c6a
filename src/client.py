"""
client.py

Client-side access to the Work Order API.

WorkOrderApiClient
    Thin async wrapper over the REST transport (httpx).  Unwraps the
    {"ok", "data"} envelope and turns error envelopes, network failures and
    timeouts into RemoteError.

WorkOrderCache
    Typed local copy of the work orders with optimistic mutations.  Every
    mutation is applied locally at once using the same WorkOrderLifecycle
    rules as the server, then sent in an asyncio.Task:

      - success  → the server copy replaces the local one, unless a newer
                   local edit happened while the request was in flight or a
                   newer server version is already known;
      - failure  → the local edit is kept, the error (remote or while
                   decoding the reply) is recorded in cache.errors[id]
                   and re-raised from the task;
      - cancel   → the task is cancelled and the local edit is left as is.

    Work orders created offline get a temporary "local-" id and are re-keyed
    to the server id once the create succeeds.  Calls made against the
    temporary id in the meantime wait for the create first.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from application import WorkOrderCommandService
from errors import Conflict, NotFound, PreconditionFailed
from model import (
    CableInstalled,
    MaintenanceType,
    Photo,
    PhotoSet,
    PointLink,
    Priority,
    ProjectLink,
    ServiceType,
    Stage,
    TaskType,
    WorkOrder,
)
from service import WorkOrderLifecycle

logger = logging.getLogger("workorders.client")

LOCAL_ID_PREFIX = "local-"


# ---------------------------------------------------------------------------
# Remote errors
# ---------------------------------------------------------------------------

class RemoteError(Exception):
    """
    A failed remote call.  `kind` is the server's error kind, or "network" /
    "timeout" when no response arrived.
    """

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def encode_photo(photo: Photo) -> Dict[str, Any]:
    return {
        "name": photo.name,
        "data": photo.data,
        "reference": photo.reference,
        "caption": photo.caption,
        "timestamp": photo.timestamp.isoformat() if photo.timestamp else None,
    }


def _decode_photo(p: Dict[str, Any]) -> Photo:
    return Photo(
        id=p["id"],
        name=p.get("name", ""),
        data=p.get("data"),
        reference=p.get("reference"),
        caption=p.get("caption", ""),
        timestamp=_parse_datetime(p.get("timestamp")),
    )


def decode_work_order(data: Dict[str, Any]) -> WorkOrder:
    """Build a WorkOrder from the JSON form of a WorkOrderDTO."""
    project = None
    if data.get("project_id"):
        project = ProjectLink(project_id=data["project_id"], name=data.get("project_name") or "")
    point = None
    if data.get("point_id"):
        coords = data.get("point_coordinates")
        point = PointLink(
            point_id=data["point_id"],
            point_type=data.get("point_type") or "",
            coordinates=tuple(coords) if coords else None,
        )
    cable = data.get("cable_installed") or {}
    return WorkOrder(
        id=data["id"],
        device_name=data.get("device_name", ""),
        site_name=data.get("site_name", ""),
        location=data.get("location", ""),
        task_type=TaskType(data["task_type"]) if data.get("task_type") else None,
        maintenance_type=MaintenanceType(data["maintenance_type"]) if data.get("maintenance_type") else None,
        service_type=ServiceType(data["service_type"]) if data.get("service_type") else None,
        description=data.get("description", ""),
        observations=data.get("observations", ""),
        priority=Priority(data["priority"]) if data.get("priority") else None,
        assigned_to=data.get("assigned_to", ""),
        scheduled_date=_parse_date(data.get("scheduled_date")),
        service_date=_parse_date(data.get("service_date")),
        completed_date=_parse_datetime(data.get("completed_date")),
        stages=[
            Stage(
                name=s["name"],
                description=s.get("description", ""),
                weight=s["weight"],
                completed=s.get("completed", False),
                photos=[_decode_photo(p) for p in s.get("photos", [])],
            )
            for s in data.get("stages", [])
        ],
        initial_photos=[_decode_photo(p) for p in data.get("initial_photos", [])],
        final_photos=[_decode_photo(p) for p in data.get("final_photos", [])],
        support_requested=data.get("support_requested", False),
        support_request_details=data.get("support_request_details"),
        support_requested_at=_parse_datetime(data.get("support_requested_at")),
        has_generated_report=data.get("has_generated_report", False),
        report_url=data.get("report_url"),
        project=project,
        point=point,
        damaged_equipment=list(data.get("damaged_equipment") or []),
        cable_installed=CableInstalled(
            utp=cable.get("utp", 0.0),
            electrical=cable.get("electrical", 0.0),
            fiber=cable.get("fiber", 0.0),
        ),
        cancelled=data.get("status") == "cancelled",
        version=data.get("version", 1),
        created_by=data.get("created_by"),
        updated_by=data.get("updated_by"),
        created_at=_parse_datetime(data.get("created_at")),
        updated_at=_parse_datetime(data.get("updated_at")),
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class WorkOrderApiClient:
    """
    Async client for /api/v1.  Pass `transport` to talk to an in-process app
    (httpx.ASGITransport) or a mock.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        actor: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"X-Actor-Id": actor} if actor else {}
        self._http = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "WorkOrderApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self._http.request(method, f"/api/v1{path}", **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteError("timeout", str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteError("network", str(exc) or type(exc).__name__) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.is_error or not isinstance(body, dict) or not body.get("ok"):
            error = (body or {}).get("error") if isinstance(body, dict) else None
            if error:
                raise RemoteError(error.get("kind", "error"), error.get("message", ""), resp.status_code)
            raise RemoteError("http", f"unexpected response ({resp.status_code})", resp.status_code)
        return body

    # --- Work orders --------------------------------------------------------

    async def create_work_order(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return (await self._request("POST", "/work-orders", json=_jsonable(fields)))["data"]

    async def list_work_orders(self, **params) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        query = {k: _jsonable(v) for k, v in params.items() if v is not None}
        body = await self._request("GET", "/work-orders", params=query)
        return body["data"], body["pagination"]

    async def get_work_order(self, work_order_id: str, include_cancelled: bool = False) -> Dict[str, Any]:
        params = {"include_cancelled": "true"} if include_cancelled else None
        return (await self._request("GET", f"/work-orders/{work_order_id}", params=params))["data"]

    async def update_work_order(self, work_order_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return (await self._request("PATCH", f"/work-orders/{work_order_id}", json=_jsonable(patch)))["data"]

    async def cancel_work_order(self, work_order_id: str) -> Dict[str, Any]:
        return (await self._request("DELETE", f"/work-orders/{work_order_id}"))["data"]

    async def complete_stage(self, work_order_id: str, stage_name: str, photos: List[Photo]) -> Dict[str, Any]:
        payload = {"stage_name": stage_name, "photos": [encode_photo(p) for p in photos]}
        return (await self._request("POST", f"/work-orders/{work_order_id}/stages/complete", json=payload))["data"]

    async def attach_photos(self, work_order_id: str, which: PhotoSet, photos: List[Photo]) -> Dict[str, Any]:
        payload = {"photos": [encode_photo(p) for p in photos]}
        return (await self._request("POST", f"/work-orders/{work_order_id}/{which.value}-photos", json=payload))["data"]

    async def request_support(self, work_order_id: str, details: Optional[str] = None) -> Dict[str, Any]:
        return (await self._request("POST", f"/work-orders/{work_order_id}/support", json={"details": details}))["data"]

    async def register_report(self, work_order_id: str, report_url: str) -> Dict[str, Any]:
        return (await self._request("POST", f"/work-orders/{work_order_id}/report", json={"report_url": report_url}))["data"]

    async def audit_history(self, work_order_id: str, page: int = 1, page_size: int = 20):
        body = await self._request(
            "GET", f"/work-orders/{work_order_id}/audit", params={"page": page, "page_size": page_size}
        )
        return body["data"], body["pagination"]

    async def support_requests(self, page: int = 1, limit: int = 10):
        body = await self._request("GET", "/support-requests", params={"page": page, "limit": limit})
        return body["data"], body["pagination"]


# ---------------------------------------------------------------------------
# Optimistic cache
# ---------------------------------------------------------------------------

class WorkOrderCache:
    """
    Local, typed view of the server's work orders.

    Mutating methods must be called from inside a running event loop; they
    return the dispatched asyncio.Task, which resolves to the reconciled
    WorkOrder (or raises the RemoteError).
    """

    def __init__(self, api: WorkOrderApiClient, lifecycle: Optional[WorkOrderLifecycle] = None):
        self._api = api
        self._lifecycle = lifecycle or WorkOrderLifecycle()
        self._orders: Dict[str, WorkOrder] = {}
        self._local_rev: Dict[str, int] = {}
        self._server_version: Dict[str, int] = {}
        self._pending_creates: Dict[str, asyncio.Task] = {}
        self._support_index: Dict[str, WorkOrder] = {}
        self.id_map: Dict[str, str] = {}          # temporary id -> server id
        self.errors: Dict[str, Exception] = {}

    # --- Reads --------------------------------------------------------------

    def get(self, work_order_id: str) -> Optional[WorkOrder]:
        key = self.id_map.get(work_order_id, work_order_id)
        return self._orders.get(key)

    def all(self) -> List[WorkOrder]:
        return list(self._orders.values())

    def progress(self, work_order_id: str) -> float:
        return self._lifecycle.progress(self._require(work_order_id))

    def status(self, work_order_id: str):
        return self._lifecycle.status(self._require(work_order_id))

    def support_requests(self) -> List[WorkOrder]:
        """Open support requests, newest request first."""
        return sorted(
            self._support_index.values(),
            key=lambda wo: wo.support_requested_at or wo.created_at,
            reverse=True,
        )

    async def load(self, page_size: int = 100, include_cancelled: bool = False) -> List[WorkOrder]:
        """Fetch every page from the server and replace the cache contents."""
        fetched: List[WorkOrder] = []
        page = 1
        while True:
            items, pagination = await self._api.list_work_orders(
                page=page, limit=page_size, include_cancelled=include_cancelled
            )
            fetched.extend(decode_work_order(item) for item in items)
            if page >= pagination["total_pages"]:
                break
            page += 1

        self._orders.clear()
        self._support_index.clear()
        self._server_version.clear()
        self.errors.clear()
        for wo in fetched:
            self._server_version[wo.id] = wo.version
            self._put(wo)
        logger.info("cache loaded %d work order(s)", len(fetched))
        return self.all()

    # --- Internal state -----------------------------------------------------

    def _require(self, work_order_id: str) -> WorkOrder:
        wo = self.get(work_order_id)
        if wo is None:
            raise NotFound(f"Work order {work_order_id} is not in the cache.")
        return wo

    def _put(self, wo: WorkOrder) -> None:
        self._orders[wo.id] = wo
        if wo.support_requested and not wo.cancelled:
            self._support_index[wo.id] = wo
        else:
            self._support_index.pop(wo.id, None)

    def _apply_local(self, wo: WorkOrder) -> int:
        self._put(wo)
        rev = self._local_rev.get(wo.id, 0) + 1
        self._local_rev[wo.id] = rev
        return rev

    def _rekey(self, temp_id: str, server_id: str) -> None:
        self.id_map[temp_id] = server_id
        wo = self._orders.pop(temp_id, None)
        self._support_index.pop(temp_id, None)
        if wo is not None:
            wo.id = server_id
            self._put(wo)
        if temp_id in self._local_rev:
            self._local_rev[server_id] = self._local_rev.pop(temp_id)
        if temp_id in self.errors:
            self.errors[server_id] = self.errors.pop(temp_id)

    def _reconcile(self, key: str, data: Dict[str, Any], rev: int) -> WorkOrder:
        server = decode_work_order(data)
        local = self._orders.get(server.id)
        known = self._server_version.get(server.id, 0)
        if local is not None and server.version < known:
            logger.debug("work order %s: ignoring stale server v%d (known v%d)", server.id, server.version, known)
            return local
        self._server_version[server.id] = max(known, server.version)
        if local is not None and self._local_rev.get(key, 0) != rev:
            logger.debug("work order %s: newer local edit in flight, keeping local copy", server.id)
            return local
        self._put(server)
        self.errors.pop(server.id, None)
        return server

    async def _resolve_remote_id(self, work_order_id: str) -> str:
        pending = self._pending_creates.get(work_order_id)
        if pending is not None:
            await asyncio.shield(pending)
        return self.id_map.get(work_order_id, work_order_id)

    def _dispatch(
        self,
        work_order_id: str,
        rev: int,
        call: Callable[[str], Awaitable[Dict[str, Any]]],
    ) -> asyncio.Task:
        async def run() -> WorkOrder:
            try:
                remote_id = await self._resolve_remote_id(work_order_id)
                data = await call(remote_id)
                return self._reconcile(self.id_map.get(work_order_id, work_order_id), data, rev)
            except Exception as exc:
                key = self.id_map.get(work_order_id, work_order_id)
                self.errors[key] = exc
                logger.warning("work order %s: remote call failed, keeping local edit: %s", key, exc)
                raise

        return asyncio.get_running_loop().create_task(run())

    def _editable(self, work_order_id: str) -> WorkOrder:
        wo = self._require(work_order_id)
        self._lifecycle.ensure_mutable(wo)
        return wo

    # --- Optimistic mutations -----------------------------------------------

    def create(self, fields: Dict[str, Any]) -> asyncio.Task:
        """
        Add a work order locally under a temporary id and send it.  The task
        resolves to the server copy, re-keyed to the server id.
        """
        temp_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"
        wo = WorkOrder(id=temp_id, stages=self._lifecycle.policy.build_stages())
        self._assign(wo, fields)
        rev = self._apply_local(wo)

        async def run() -> WorkOrder:
            try:
                data = await self._api.create_work_order(fields)
                server_id = data["id"]
            except Exception as exc:
                self.errors[temp_id] = exc
                logger.warning("work order %s: create failed, keeping local copy: %s", temp_id, exc)
                raise
            finally:
                self._pending_creates.pop(temp_id, None)
            self._rekey(temp_id, server_id)
            try:
                return self._reconcile(server_id, data, rev)
            except Exception as exc:
                self.errors[server_id] = exc
                logger.warning("work order %s: could not decode server copy: %s", server_id, exc)
                raise

        task = asyncio.get_running_loop().create_task(run())
        self._pending_creates[temp_id] = task
        return task

    def update(self, work_order_id: str, patch: Dict[str, Any]) -> asyncio.Task:
        wo = copy.deepcopy(self._editable(work_order_id))
        self._assign(wo, patch)
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.update_work_order(remote_id, patch)
        )

    def complete_stage(self, work_order_id: str, stage_name: str, photos: List[Photo]) -> asyncio.Task:
        wo = self._lifecycle.complete_stage(self._editable(work_order_id), stage_name, photos)
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.complete_stage(remote_id, stage_name, photos)
        )

    def attach_photos(self, work_order_id: str, which: PhotoSet, photos: List[Photo]) -> asyncio.Task:
        wo = self._lifecycle.attach_photos(self._editable(work_order_id), which, photos)
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.attach_photos(remote_id, which, photos)
        )

    def request_support(self, work_order_id: str, details: Optional[str] = None) -> asyncio.Task:
        current = self._editable(work_order_id)
        if current.support_requested:
            raise Conflict(f"Support was already requested for work order {current.id}.")
        wo = copy.deepcopy(current)
        wo.support_requested = True
        wo.support_request_details = details
        wo.support_requested_at = datetime.now(timezone.utc)
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.request_support(remote_id, details)
        )

    def register_report(self, work_order_id: str, report_url: str) -> asyncio.Task:
        current = self._editable(work_order_id)
        if not self._lifecycle.can_finalize_report(current):
            raise PreconditionFailed(
                f"Work order {current.id} has {current.photo_count} photo(s); "
                f"{self._lifecycle.policy.min_report_photos} are required before a report."
            )
        wo = copy.deepcopy(current)
        wo.has_generated_report = True
        wo.report_url = report_url
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.register_report(remote_id, report_url)
        )

    def cancel(self, work_order_id: str) -> asyncio.Task:
        wo = self._lifecycle.cancel(self._require(work_order_id))
        rev = self._apply_local(wo)
        return self._dispatch(
            work_order_id, rev, lambda remote_id: self._api.cancel_work_order(remote_id)
        )

    # --- Field assignment ---------------------------------------------------

    @staticmethod
    def _assign(wo: WorkOrder, fields: Dict[str, Any]) -> None:
        """Apply the descriptive fields the server would accept."""
        coercions = WorkOrderCommandService.UPDATABLE_FIELDS
        for name, value in fields.items():
            if name in coercions:
                setattr(wo, name, coercions[name](value))
            elif name == "project_id":
                wo.project = ProjectLink(project_id=value) if value else None
            elif name == "point_id":
                wo.point = PointLink(point_id=value) if value else None
