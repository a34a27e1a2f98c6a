"""Tests for the lifecycle & progress model"""
import copy
import itertools
import math
import random
from datetime import datetime, timezone
from typing import List

import pytest

from errors import EvidenceRequired, InvariantViolation, NotFound, ValidationError
from model import PhotoSet, Stage, WorkOrder, WorkOrderStatus
from service import AuditService, LifecyclePolicy, WorkOrderLifecycle
from tests.conftest import make_photo


@pytest.fixture
def lifecycle():
    return WorkOrderLifecycle()


@pytest.fixture
def order(lifecycle):
    return WorkOrder(stages=lifecycle.policy.build_stages())


def test_default_template_is_valid(lifecycle):
    stages = lifecycle.policy.build_stages()
    assert [s.name for s in stages] == ["Arrival", "Diagnosis", "Materials", "Conclusion"]
    assert [s.weight for s in stages] == [0.10, 0.10, 0.50, 0.30]
    lifecycle.validate_stage_template(stages)


def test_progress_follows_stage_weights(lifecycle, order):
    expected = [
        ("Arrival", 0.10, WorkOrderStatus.IN_PROGRESS),
        ("Diagnosis", 0.20, WorkOrderStatus.IN_PROGRESS),
        ("Materials", 0.70, WorkOrderStatus.IN_PROGRESS),
        ("Conclusion", 1.0, WorkOrderStatus.FINALIZED),
    ]
    assert lifecycle.progress(order) == 0.0
    assert lifecycle.status(order) == WorkOrderStatus.PENDING
    for stage_name, progress, status in expected:
        order = lifecycle.complete_stage(order, stage_name, [make_photo()])
        assert lifecycle.progress(order) == pytest.approx(progress)
        assert lifecycle.status(order) == status
    assert lifecycle.progress(order) == 1.0


def test_out_of_order_completion_still_finalizes(lifecycle, order):
    for stage_name in ("Conclusion", "Arrival", "Materials", "Diagnosis"):
        order = lifecycle.complete_stage(order, stage_name, [make_photo()])
    assert lifecycle.status(order) == WorkOrderStatus.FINALIZED


def test_complete_stage_requires_evidence(lifecycle, order):
    with pytest.raises(EvidenceRequired):
        lifecycle.complete_stage(order, "Arrival", [])
    assert not order.find_stage("Arrival").completed


def test_unknown_stage_is_not_found_before_evidence_check(lifecycle, order):
    with pytest.raises(NotFound):
        lifecycle.complete_stage(order, "Painting", [])


def test_complete_stage_does_not_mutate_input(lifecycle, order):
    updated = lifecycle.complete_stage(order, "Arrival", [make_photo(), make_photo("b.jpg")])
    assert not order.find_stage("Arrival").completed
    assert order.photo_count == 0
    assert updated.find_stage("Arrival").completed
    assert updated.photo_count == 2


def test_completed_date_set_only_on_transition_into_finalized(lifecycle, order):
    first = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    later = datetime(2024, 5, 11, 9, 0, tzinfo=timezone.utc)
    for stage_name in ("Arrival", "Diagnosis", "Materials"):
        order = lifecycle.complete_stage(order, stage_name, [make_photo()], now=first)
        assert order.completed_date is None
    order = lifecycle.complete_stage(order, "Conclusion", [make_photo()], now=first)
    assert order.completed_date == first

    order = lifecycle.complete_stage(order, "Conclusion", [make_photo("extra.jpg")], now=later)
    assert order.completed_date == first
    assert len(order.find_stage("Conclusion").photos) == 2


def test_cancelled_status_is_sticky(lifecycle, order):
    for stage_name in ("Arrival", "Diagnosis", "Materials", "Conclusion"):
        order = lifecycle.complete_stage(order, stage_name, [make_photo()])
    cancelled = lifecycle.cancel(order)
    assert lifecycle.status(cancelled) == WorkOrderStatus.CANCELLED
    assert lifecycle.status(order) == WorkOrderStatus.FINALIZED


def test_can_finalize_report_counts_photos_across_stages(lifecycle, order):
    order = lifecycle.complete_stage(order, "Arrival", [make_photo(), make_photo()])
    assert not lifecycle.can_finalize_report(order)
    order = lifecycle.complete_stage(order, "Diagnosis", [make_photo(), make_photo()])
    assert lifecycle.can_finalize_report(order)


def test_min_report_photos_is_policy():
    lifecycle = WorkOrderLifecycle(LifecyclePolicy(min_report_photos=1))
    order = WorkOrder(stages=lifecycle.policy.build_stages())
    order = lifecycle.complete_stage(order, "Arrival", [make_photo()])
    assert lifecycle.can_finalize_report(order)


@pytest.mark.parametrize(
    "weights",
    [
        [0.5, 0.4],
        [0.5, 0.6],
        [1.0, 0.0],
        [1.2, -0.2],
    ],
)
def test_template_weights_must_be_positive_and_sum_to_one(lifecycle, weights):
    stages = [Stage(name=f"S{i}", weight=w) for i, w in enumerate(weights)]
    with pytest.raises(InvariantViolation):
        lifecycle.validate_stage_template(stages)


def test_template_tolerates_float_rounding(lifecycle):
    stages = [Stage(name=f"S{i}", weight=0.1) for i in range(10)]
    lifecycle.validate_stage_template(stages)


def test_template_rejects_duplicate_and_empty(lifecycle):
    with pytest.raises(ValidationError):
        lifecycle.validate_stage_template([Stage(name="A", weight=0.5), Stage(name="A", weight=0.5)])
    with pytest.raises(ValidationError):
        lifecycle.validate_stage_template([])


def test_diff_lists_exactly_the_changed_fields(lifecycle, order):
    audit = AuditService(lifecycle)
    updated = lifecycle.complete_stage(order, "Arrival", [make_photo()])
    changes = audit.diff(audit.snapshot(order), audit.snapshot(updated))
    assert changes == {
        "stages[Arrival].completed": {"from": False, "to": True},
        "stages[Arrival].photo_count": {"from": 0, "to": 1},
        "status": {"from": "pending", "to": "in_progress"},
        "progress": {"from": 0.0, "to": 0.1},
    }


def test_snapshot_of_nothing_is_empty(lifecycle):
    assert AuditService(lifecycle).snapshot(None) == {}


# ---------------------------------------------------------------------------
# Progress and status over arbitrary completion subsets
# ---------------------------------------------------------------------------

DEFAULT_NAMES = ["Arrival", "Diagnosis", "Materials", "Conclusion"]


def _random_template(seed: int) -> List[Stage]:
    rng = random.Random(seed)
    count = rng.randint(1, 7)
    raw = [rng.uniform(0.05, 1.0) for _ in range(count)]
    total = math.fsum(raw)
    weights = [w / total for w in raw]
    weights[-1] = 1.0 - math.fsum(weights[:-1])
    return [Stage(name=f"S{i}", weight=w) for i, w in enumerate(weights)]


def _expected_status(progress: float, cancelled: bool) -> WorkOrderStatus:
    if cancelled:
        return WorkOrderStatus.CANCELLED
    if progress >= 1.0:
        return WorkOrderStatus.FINALIZED
    if progress > 0.0:
        return WorkOrderStatus.IN_PROGRESS
    return WorkOrderStatus.PENDING


def _check_derivation(lifecycle, order, completed):
    order = copy.deepcopy(order)
    for name in completed:
        order = lifecycle.complete_stage(order, name, [make_photo()])

    progress = lifecycle.progress(order)
    expected = math.fsum(s.weight for s in order.stages if s.name in completed)
    assert 0.0 <= progress <= 1.0
    assert progress == pytest.approx(expected, abs=1e-6)
    assert lifecycle.status(order) == _expected_status(progress, cancelled=False)

    cancelled = lifecycle.cancel(order)
    assert lifecycle.progress(cancelled) == progress
    assert lifecycle.status(cancelled) == WorkOrderStatus.CANCELLED


@pytest.mark.parametrize(
    "completed",
    [subset for r in range(len(DEFAULT_NAMES) + 1) for subset in itertools.combinations(DEFAULT_NAMES, r)],
    ids=lambda subset: "+".join(subset) or "none",
)
def test_status_is_derived_for_every_default_subset(lifecycle, order, completed):
    _check_derivation(lifecycle, order, completed)


@pytest.mark.parametrize("seed", range(25))
def test_status_is_derived_for_random_templates(lifecycle, seed):
    stages = _random_template(seed)
    lifecycle.validate_stage_template(stages)
    order = WorkOrder(stages=stages)

    rng = random.Random(seed + 1000)
    names = [s.name for s in stages]
    for _ in range(5):
        completed = [n for n in names if rng.random() < 0.5]
        rng.shuffle(completed)
        _check_derivation(lifecycle, order, completed)
    _check_derivation(lifecycle, order, names)


# ---------------------------------------------------------------------------
# Initial / final photo sets
# ---------------------------------------------------------------------------

def test_attach_photos_leaves_stages_untouched(lifecycle, order):
    updated = lifecycle.attach_photos(order, PhotoSet.INITIAL, [make_photo("before.jpg")])
    assert [p.name for p in updated.initial_photos] == ["before.jpg"]
    assert order.initial_photos == []
    assert lifecycle.progress(updated) == 0.0
    assert updated.photo_count == 0

    with pytest.raises(EvidenceRequired):
        lifecycle.attach_photos(order, PhotoSet.FINAL, [])
