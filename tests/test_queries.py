"""Tests for the work order query service"""
from datetime import date

import pytest

from application import (
    CancelWorkOrderCommand,
    RequestSupportCommand,
    UpdateWorkOrderCommand,
    WorkOrderFilters,
)
from errors import NotFound, ValidationError
from model import Priority, TaskType, WorkOrderStatus
from tests.conftest import ACTOR, complete, create_command


@pytest.fixture
def seeded(runtime):
    """Five work orders across sites, priorities and states."""
    cmds = runtime.commands()
    orders = {
        "cam": cmds.create(create_command(device_name="CAM-044", priority="high"), runtime.uow()),
        "ups": cmds.create(
            create_command(device_name="UPS-2", site_name="Depot 3", priority="low",
                           task_type="cleaning", assigned_to="Luis Mena", project_id="prj-1",
                           scheduled_date=date(2024, 6, 1)),
            runtime.uow(),
        ),
        "sw": cmds.create(
            create_command(device_name="SW-CORE", site_name="Tower B", priority="medium",
                           location="South", scheduled_date=date(2024, 7, 15)),
            runtime.uow(),
        ),
        "ap": cmds.create(create_command(device_name="AP-17", priority="low"), runtime.uow()),
        "old": cmds.create(create_command(device_name="NVR-1"), runtime.uow()),
    }
    complete(runtime, orders["sw"].id, "Arrival")
    cmds.cancel(CancelWorkOrderCommand(orders["old"].id, ACTOR), runtime.uow())
    return orders


def _ids(page):
    return {item.id for item in page.items}


def test_list_excludes_cancelled_by_default(runtime, seeded):
    page = runtime.queries().list(runtime.uow())
    assert page.pagination.total == 4
    assert seeded["old"].id not in _ids(page)


def test_list_cancelled_on_request(runtime, seeded):
    queries = runtime.queries()
    page = queries.list(runtime.uow(), WorkOrderFilters(status=WorkOrderStatus.CANCELLED))
    assert _ids(page) == {seeded["old"].id}
    page = queries.list(runtime.uow(), WorkOrderFilters(include_cancelled=True))
    assert page.pagination.total == 5


def test_list_filters(runtime, seeded):
    queries = runtime.queries()
    uow = runtime.uow()
    assert _ids(queries.list(uow, WorkOrderFilters(status=WorkOrderStatus.IN_PROGRESS))) == {seeded["sw"].id}
    assert _ids(queries.list(uow, WorkOrderFilters(task_type=TaskType.CLEANING))) == {seeded["ups"].id}
    assert _ids(queries.list(uow, WorkOrderFilters(priority=Priority.LOW))) == {seeded["ups"].id, seeded["ap"].id}
    assert _ids(queries.list(uow, WorkOrderFilters(location="south"))) == {seeded["sw"].id}
    assert _ids(queries.list(uow, WorkOrderFilters(assigned_to="MENA"))) == {seeded["ups"].id}
    assert _ids(queries.list(uow, WorkOrderFilters(project_id="prj-1"))) == {seeded["ups"].id}
    assert _ids(queries.list(
        uow, WorkOrderFilters(scheduled_from=date(2024, 6, 1), scheduled_to=date(2024, 6, 30))
    )) == {seeded["ups"].id}


def test_list_search_covers_project_name(runtime, seeded):
    queries = runtime.queries()
    assert _ids(queries.list(runtime.uow(), WorkOrderFilters(search="metro fiber"))) == {seeded["ups"].id}
    assert _ids(queries.list(runtime.uow(), WorkOrderFilters(search="tower"))) == {seeded["sw"].id}


def test_list_pagination(runtime, seeded):
    page = runtime.queries().list(runtime.uow(), page=2, limit=3)
    assert page.pagination.total == 4
    assert page.pagination.total_pages == 2
    assert page.pagination.page == 2
    assert len(page.items) == 1


def test_list_default_sort_is_newest_first(runtime, seeded):
    page = runtime.queries().list(runtime.uow())
    created = [item.created_at for item in page.items]
    assert created == sorted(created, reverse=True)


def test_list_sort_by_priority_rank(runtime, seeded):
    page = runtime.queries().list(runtime.uow(), sort_by="priority", sort_order="asc")
    assert [item.priority for item in page.items] == ["high", "medium", "low", "low"]


def test_list_rejects_unknown_sort_field(runtime, seeded):
    with pytest.raises(ValidationError):
        runtime.queries().list(runtime.uow(), sort_by="password")
    with pytest.raises(ValidationError):
        runtime.queries().list(runtime.uow(), page=0)


def test_get_hides_cancelled_unless_asked(runtime, seeded):
    queries = runtime.queries()
    with pytest.raises(NotFound):
        queries.get(runtime.uow(), seeded["old"].id)
    assert queries.get(runtime.uow(), seeded["old"].id, include_cancelled=True).status == "cancelled"


def test_get_unknown(runtime):
    with pytest.raises(NotFound):
        runtime.queries().get(runtime.uow(), "missing")


def test_history_of_unknown_order(runtime):
    with pytest.raises(NotFound):
        runtime.queries().history(runtime.uow(), "missing")


def test_history_page(runtime, seeded):
    cmd = UpdateWorkOrderCommand(seeded["cam"].id, ACTOR, {"observations": "checked"})
    runtime.commands().update(cmd, runtime.uow())
    page = runtime.queries().history(runtime.uow(), seeded["cam"].id)
    assert [r.action for r in page.items] == ["update", "create"]
    assert page.items[0].changes == {"observations": {"from": "", "to": "checked"}}
    assert page.pagination.total == 2


def test_support_requests_projection(runtime, seeded):
    cmds = runtime.commands()
    cmds.request_support(RequestSupportCommand(seeded["cam"].id, ACTOR, "Need ladder"), runtime.uow())
    cmds.request_support(RequestSupportCommand(seeded["ups"].id, ACTOR), runtime.uow())
    cmds.request_support(RequestSupportCommand(seeded["ap"].id, ACTOR), runtime.uow())
    cmds.cancel(CancelWorkOrderCommand(seeded["ap"].id, ACTOR), runtime.uow())

    page = runtime.queries().support_requests(runtime.uow())
    assert [row.work_order_id for row in page.items] == [seeded["ups"].id, seeded["cam"].id]
    assert page.items[1].details == "Need ladder"
    assert page.pagination.total == 2
