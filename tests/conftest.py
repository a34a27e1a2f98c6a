# tests/conftest.py - Shared test fixtures
from datetime import date

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from api import app, get_runtime
from application import CompleteStageCommand, CreateWorkOrderCommand
from config import LEDGER_BEST_EFFORT, Settings
from infrastructure import build_runtime
from ledger import BestEffortAuditLedger
from model import Photo

ACTOR = "tech-001"
ACTOR_HEADERS = {"X-Actor-Id": ACTOR}


def make_photo(name: str = "evidence.jpg") -> Photo:
    return Photo(name=name, data="aGVsbG8=", caption=name)


def create_command(**overrides) -> CreateWorkOrderCommand:
    fields = dict(
        actor=ACTOR,
        task_type="repair",
        maintenance_type="corrective",
        description="Camera offline since Monday",
        scheduled_date=date(2024, 5, 10),
        assigned_to="Ana Torres",
        priority="high",
        location="North",
        site_name="Substation 12",
        device_name="CAM-044",
    )
    fields.update(overrides)
    return CreateWorkOrderCommand(**fields)


def create_payload(**overrides) -> dict:
    payload = {
        "task_type": "repair",
        "maintenance_type": "corrective",
        "description": "Camera offline since Monday",
        "scheduled_date": "2024-05-10",
        "assigned_to": "Ana Torres",
        "priority": "high",
        "location": "North",
        "site_name": "Substation 12",
        "device_name": "CAM-044",
    }
    payload.update(overrides)
    return payload


def complete(runtime, work_order_id: str, stage_name: str, photos: int = 1, actor: str = ACTOR):
    cmd = CompleteStageCommand(
        work_order_id=work_order_id,
        stage_name=stage_name,
        evidence=[make_photo(f"{stage_name}-{i}.jpg") for i in range(photos)],
        actor=actor,
    )
    return runtime.commands().complete_stage(cmd, runtime.uow())


@pytest.fixture
def runtime():
    rt = build_runtime(Settings())
    rt.references.register_project("prj-1", "Metro Fiber Rollout")
    rt.references.register_point("pt-1", "camera", (19.4326, -99.1332))
    return rt


@pytest.fixture
def best_effort_runtime():
    rt = build_runtime(Settings(ledger_mode=LEDGER_BEST_EFFORT))
    rt.sleeps = []
    rt.ledger = BestEffortAuditLedger(max_attempts=3, backoff_seconds=0.05, sleep=rt.sleeps.append)
    return rt


@pytest.fixture
def work_order(runtime):
    """A freshly created work order (DTO) with the default stage template."""
    return runtime.commands().create(create_command(), runtime.uow())


@pytest_asyncio.fixture
async def client(runtime):
    """HTTP test client with the runtime dependency overridden"""
    app.dependency_overrides[get_runtime] = lambda: runtime
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
