"""Tests for the Work Order REST API"""
import pytest
from httpx import AsyncClient

from tests.conftest import ACTOR_HEADERS, create_payload

PHOTO = {"name": "arrival.jpg", "data": "aGVsbG8=", "caption": "Gate"}


async def _create(client: AsyncClient, **overrides) -> dict:
    r = await client.post("/api/v1/work-orders", json=create_payload(**overrides), headers=ACTOR_HEADERS)
    assert r.status_code == 201, r.text
    return r.json()["data"]


async def _complete(client: AsyncClient, wo_id: str, stage: str, photos: int = 1):
    return await client.post(
        f"/api/v1/work-orders/{wo_id}/stages/complete",
        json={"stage_name": stage, "photos": [PHOTO] * photos},
        headers=ACTOR_HEADERS,
    )


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_and_get(client: AsyncClient):
    created = await _create(client, project_id="prj-1")
    assert created["status"] == "pending"
    assert created["project_name"] == "Metro Fiber Rollout"

    r = await client.get(f"/api/v1/work-orders/{created['id']}")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["data"]["id"] == created["id"]


@pytest.mark.asyncio
async def test_create_validation_error_envelope(client: AsyncClient):
    payload = create_payload()
    del payload["site_name"]
    r = await client.post("/api/v1/work-orders", json=payload, headers=ACTOR_HEADERS)
    assert r.status_code == 422
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["kind"] == "validation"
    assert "site_name" in body["error"]["message"]


@pytest.mark.asyncio
async def test_create_without_actor_is_rejected(client: AsyncClient):
    r = await client.post("/api/v1/work-orders", json=create_payload())
    assert r.status_code == 422
    assert r.json()["error"]["kind"] == "validation"


@pytest.mark.asyncio
async def test_unknown_reference_is_404(client: AsyncClient):
    r = await client.post(
        "/api/v1/work-orders", json=create_payload(point_id="pt-404"), headers=ACTOR_HEADERS
    )
    assert r.status_code == 404
    assert r.json()["error"]["kind"] == "reference_not_found"


@pytest.mark.asyncio
async def test_stage_flow_to_report(client: AsyncClient):
    wo = await _create(client)

    r = await _complete(client, wo["id"], "Arrival", photos=0)
    assert r.status_code == 422
    assert r.json()["error"]["kind"] == "evidence_required"

    r = await _complete(client, wo["id"], "Arrival", photos=2)
    assert r.status_code == 200
    assert r.json()["data"]["progress"] == pytest.approx(0.10)

    r = await client.post(
        f"/api/v1/work-orders/{wo['id']}/report",
        json={"report_url": "https://reports.example/1.pdf"},
        headers=ACTOR_HEADERS,
    )
    assert r.status_code == 412
    assert r.json()["error"]["kind"] == "precondition_failed"

    for stage in ("Diagnosis", "Materials", "Conclusion"):
        r = await _complete(client, wo["id"], stage)
        assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "finalized"
    assert data["has_minimum_required_photos"] is True

    r = await client.post(
        f"/api/v1/work-orders/{wo['id']}/report",
        json={"report_url": "https://reports.example/1.pdf"},
        headers=ACTOR_HEADERS,
    )
    assert r.status_code == 200
    assert r.json()["data"]["has_generated_report"] is True


@pytest.mark.asyncio
async def test_unknown_stage_is_404(client: AsyncClient):
    wo = await _create(client)
    r = await _complete(client, wo["id"], "Painting")
    assert r.status_code == 404
    assert r.json()["error"]["kind"] == "not_found"


@pytest.mark.asyncio
async def test_patch_ignores_protected_fields(client: AsyncClient):
    wo = await _create(client)
    r = await client.patch(
        f"/api/v1/work-orders/{wo['id']}",
        json={"status": "finalized", "observations": "Fan replaced", "notes": "from tablet"},
        headers={**ACTOR_HEADERS, "User-Agent": "field-app/2.1"},
    )
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "pending"
    assert r.json()["data"]["observations"] == "Fan replaced"

    r = await client.get(f"/api/v1/work-orders/{wo['id']}/audit")
    latest = r.json()["data"][0]
    assert latest["action"] == "update"
    assert latest["metadata"]["ignored_fields"] == ["status"]
    assert latest["metadata"]["notes"] == "from tablet"
    assert latest["metadata"]["user_agent"] == "field-app/2.1"
    assert latest["performed_by"] == "tech-001"


@pytest.mark.asyncio
async def test_duplicate_support_is_409(client: AsyncClient):
    wo = await _create(client)
    url = f"/api/v1/work-orders/{wo['id']}/support"
    r = await client.post(url, json={"details": "Need splicer"}, headers=ACTOR_HEADERS)
    assert r.status_code == 200
    r = await client.post(url, json={"details": "Need splicer"}, headers=ACTOR_HEADERS)
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "conflict"

    r = await client.get("/api/v1/support-requests")
    body = r.json()
    assert body["pagination"]["total"] == 1
    assert body["data"][0]["work_order_id"] == wo["id"]
    assert body["data"][0]["details"] == "Need splicer"


@pytest.mark.asyncio
async def test_cancel_hides_order_and_blocks_mutation(client: AsyncClient):
    wo = await _create(client)
    r = await client.delete(f"/api/v1/work-orders/{wo['id']}")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "cancelled"

    r = await client.get(f"/api/v1/work-orders/{wo['id']}")
    assert r.status_code == 404
    r = await client.get(f"/api/v1/work-orders/{wo['id']}", params={"include_cancelled": "true"})
    assert r.status_code == 200

    r = await _complete(client, wo["id"], "Arrival")
    assert r.status_code == 409

    r = await client.get(f"/api/v1/work-orders/{wo['id']}/audit")
    assert r.json()["data"][0]["performed_by"] == "system"


@pytest.mark.asyncio
async def test_list_with_filters_and_pagination(client: AsyncClient):
    await _create(client, site_name="Depot 3", priority="low")
    await _create(client, site_name="Tower B", priority="high")
    await _create(client, site_name="Tower C", priority="high")

    r = await client.get("/api/v1/work-orders", params={"priority": "high", "limit": 1})
    body = r.json()
    assert r.status_code == 200
    assert body["pagination"] == {"total": 2, "page": 1, "limit": 1, "total_pages": 2}
    assert len(body["data"]) == 1

    r = await client.get("/api/v1/work-orders", params={"search": "depot"})
    assert [wo["site_name"] for wo in r.json()["data"]] == ["Depot 3"]


@pytest.mark.asyncio
async def test_list_rejects_bad_filter(client: AsyncClient):
    r = await client.get("/api/v1/work-orders", params={"status": "archived"})
    assert r.status_code == 422
    r = await client.get("/api/v1/work-orders", params={"sort_by": "secret"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_audit_of_unknown_order_is_404(client: AsyncClient):
    r = await client.get("/api/v1/work-orders/missing/audit")
    assert r.status_code == 404
    assert r.json() == {
        "ok": False,
        "error": {"kind": "not_found", "message": "Work order missing not found.", "retryable": False},
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("patch", [{"description": 5}, {"damaged_equipment": 5}])
async def test_patch_with_wrong_types_is_422(client: AsyncClient, patch):
    wo = await _create(client)
    r = await client.patch(f"/api/v1/work-orders/{wo['id']}", json=patch, headers=ACTOR_HEADERS)
    assert r.status_code == 422
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["kind"] == "validation"


@pytest.mark.asyncio
async def test_initial_and_final_photos(client: AsyncClient):
    wo = await _create(client)
    r = await client.post(
        f"/api/v1/work-orders/{wo['id']}/initial-photos", json={"photos": [PHOTO]}, headers=ACTOR_HEADERS
    )
    assert r.status_code == 200
    assert len(r.json()["data"]["initial_photos"]) == 1

    r = await client.post(
        f"/api/v1/work-orders/{wo['id']}/final-photos", json={"photos": [PHOTO] * 4}, headers=ACTOR_HEADERS
    )
    data = r.json()["data"]
    assert len(data["final_photos"]) == 4
    assert data["status"] == "pending"
    assert data["has_minimum_required_photos"] is False

    r = await client.post(
        f"/api/v1/work-orders/{wo['id']}/final-photos", json={"photos": []}, headers=ACTOR_HEADERS
    )
    assert r.status_code == 422
    assert r.json()["error"]["kind"] == "evidence_required"

    r = await client.get(f"/api/v1/work-orders/{wo['id']}/audit")
    latest = r.json()["data"][0]
    assert latest["action"] == "update"
    assert latest["changes"] == {"final_photo_count": {"from": 0, "to": 4}}
