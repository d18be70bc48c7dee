import random

import pytest

from clonewarden.allocator import (
    AllocationError,
    InsufficientCapacityError,
    apply_device_caps,
    assign_items,
    capacity_report,
    filter_candidate_slots,
    plan_assignments,
    unassign,
)
from clonewarden.models import Assignment, Slot
from clonewarden.storage import (
    AssignmentConflict,
    apply_assignments,
    get_item,
    get_slot,
    list_slots,
    upsert_item,
    upsert_slot,
)


def _slot(device_id, slot_number, status="Available", item_id=None):
    return Slot(
        device_id=device_id,
        slot_number=slot_number,
        status=status,
        current_item_id=item_id,
        health="unknown",
    )


def _targets(plan):
    return [(a.item_id, a.device_id, a.slot_number) for a in plan.assignments]


def _seed(conn, devices, items):
    for device_id, count in devices.items():
        for slot_number in range(1, count + 1):
            upsert_slot(conn, device_id, slot_number)
    for item_id in items:
        upsert_item(conn, item_id, item_id)


def test_fill_first_uses_slots_in_order():
    slots = [_slot("dev2", 1), _slot("dev1", 2), _slot("dev1", 1)]
    plan = plan_assignments(["X", "Y", "Z"], slots, "fill-first")
    assert _targets(plan) == [("X", "dev1", 1), ("Y", "dev1", 2), ("Z", "dev2", 1)]


def test_round_robin_alternates_until_device_exhausted():
    slots = [_slot("A", 1), _slot("A", 2), _slot("B", 1)]
    plan = plan_assignments(["i1", "i2", "i3"], slots, "round-robin")
    assert [a.device_id for a in plan.assignments] == ["A", "B", "A"]
    assert plan.assignments[2].slot_number == 2


def test_insufficient_capacity_without_partial():
    slots = [_slot("A", n) for n in range(1, 5)]
    items = [f"i{n}" for n in range(10)]
    with pytest.raises(InsufficientCapacityError) as excinfo:
        plan_assignments(items, slots, "fill-first")
    assert str(excinfo.value) == "Insufficient capacity. Need 10 slots, but only 4 available"


def test_partial_assignment_reports_shortfall():
    slots = [_slot("A", n) for n in range(1, 5)]
    items = [f"i{n}" for n in range(10)]
    plan = plan_assignments(items, slots, "fill-first", allow_partial=True)
    assert len(plan.assignments) == 4
    assert plan.shortfall == 6
    assert plan.requested == 10
    assert plan.warnings == ["Partial assignment: only 4 of 10 items could be assigned"]


def test_capacity_based_prefers_device_with_most_free_slots():
    slots = [_slot("A", 1), _slot("B", 1), _slot("B", 2), _slot("B", 3)]
    plan = plan_assignments(["i1", "i2", "i3", "i4"], slots, "capacity-based")
    assert [a.device_id for a in plan.assignments] == ["B", "B", "B", "A"]


def test_balanced_load_fills_least_loaded_device():
    slots = [_slot("A", 3), _slot("A", 4), _slot("B", 1), _slot("B", 2)]
    snapshot = {"A": {"capacity": 4, "usage": 2}, "B": {"capacity": 2, "usage": 0}}
    plan = plan_assignments(["i1", "i2"], slots, "balanced-load", snapshot=snapshot)
    assert [a.device_id for a in plan.assignments] == ["B", "B"]


def test_optimal_distribution_is_repeatable_with_seed():
    slots = [_slot(device, n) for device in ("A", "B", "C") for n in (1, 2)]
    items = ["i1", "i2", "i3", "i4"]
    first = plan_assignments(items, slots, "optimal-distribution", rng=random.Random(7))
    second = plan_assignments(items, slots, "optimal-distribution", rng=random.Random(7))
    assert _targets(first) == _targets(second)
    occupied = [(a.device_id, a.slot_number) for a in first.assignments]
    assert len(occupied) == len(set(occupied)) == 4


def test_unknown_strategy_rejected():
    with pytest.raises(AllocationError, match="Unknown allocation strategy"):
        plan_assignments(["i1"], [_slot("A", 1)], "random-walk")


def test_exclusion_rules():
    slots = [_slot("A", 1), _slot("B", 1)]
    with pytest.raises(AllocationError, match="Specified device is in exclusion list"):
        filter_candidate_slots(slots, device_id="A", excluded_device_ids=["A"])
    with pytest.raises(AllocationError, match="All preferred devices are excluded"):
        filter_candidate_slots(slots, preferred_device_ids=["A"], excluded_device_ids=["A"])
    with pytest.raises(AllocationError, match="No available slots found"):
        filter_candidate_slots(slots, preferred_device_ids=["C"])

    kept = filter_candidate_slots(slots, excluded_device_ids=["A"])
    assert [slot.device_id for slot in kept] == ["B"]


def test_filter_ignores_occupied_and_broken_slots():
    slots = [_slot("A", 1, item_id="x"), _slot("A", 2, status="Broken"), _slot("A", 3)]
    kept = filter_candidate_slots(slots)
    assert [slot.slot_number for slot in kept] == [3]


def test_device_caps_count_existing_usage():
    slots = [_slot("A", 2), _slot("A", 3), _slot("B", 1), _slot("B", 2)]
    snapshot = {"A": {"usage": 1}, "B": {"usage": 0}}
    kept = apply_device_caps(slots, 2, snapshot)
    assert [(slot.device_id, slot.slot_number) for slot in kept] == [("A", 2), ("B", 1), ("B", 2)]


def test_assign_and_unassign_round_trip(conn):
    _seed(conn, {"A": 2, "B": 1}, ["i1", "i2", "i3"])
    plan = assign_items(conn, ["i1", "i2", "i3"], "round-robin")
    assert len(plan.assignments) == 3

    item = get_item(conn, "i2")
    assert item.status == "Assigned"
    assert (item.assigned_device_id, item.assigned_slot_number) == ("B", 1)
    slot = get_slot(conn, "B", 1)
    assert slot.status == "Assigned"
    assert slot.current_item_id == "i2"

    report = {row["device_id"]: row for row in capacity_report(conn)}
    assert report["A"]["used"] == 2
    assert report["A"]["status"] == "full"

    assert unassign(conn, "B", 1) == "i2"
    item = get_item(conn, "i2")
    assert item.status == "Unused"
    assert item.assigned_device_id is None
    assert get_slot(conn, "B", 1).current_item_id is None


def test_each_item_occupies_at_most_one_slot(conn):
    _seed(conn, {"A": 3, "B": 3}, ["i1", "i2"])
    assign_items(conn, ["i1", "i2"], "fill-first")
    again = assign_items(conn, ["i1", "i2"], "fill-first")
    assert again.assignments == []
    assert again.warnings == ["No unassigned items to process"]
    occupants = [slot.current_item_id for slot in list_slots(conn) if slot.current_item_id]
    assert sorted(occupants) == ["i1", "i2"]


def test_assign_respects_device_cap_with_existing_usage(conn):
    _seed(conn, {"A": 3, "B": 3}, ["i1", "i2", "i3", "i4"])
    assign_items(conn, ["i1", "i2"], "fill-first", device_id="A")
    plan = assign_items(conn, ["i3", "i4"], "fill-first", max_items_per_device=2)
    assert [a.device_id for a in plan.assignments] == ["B", "B"]


def test_conflict_rolls_back_whole_batch(conn):
    _seed(conn, {"A": 1}, ["i1", "i2"])
    upsert_slot(conn, "B", 1, status="Broken")
    with pytest.raises(AssignmentConflict):
        apply_assignments(
            conn,
            [Assignment("i1", "A", 1), Assignment("i2", "B", 1)],
        )
    assert get_slot(conn, "A", 1).current_item_id is None
    assert get_item(conn, "i1").status == "Unused"


def test_unassign_missing_slot(conn):
    with pytest.raises(AllocationError, match="does not exist"):
        unassign(conn, "nope", 1)


def test_unassign_leaves_empty_out_of_service_slots_alone(conn):
    upsert_slot(conn, "A", 1, status="Broken")
    upsert_slot(conn, "A", 2, status="Maintenance")
    assert unassign(conn, "A", 1) is None
    assert unassign(conn, "A", 2) is None
    assert get_slot(conn, "A", 1).status == "Broken"
    assert get_slot(conn, "A", 2).status == "Maintenance"
    assert filter_candidate_slots(list_slots(conn)) == []


def test_no_free_slots_is_a_capacity_shortfall():
    full = [_slot("A", 1, item_id="x"), _slot("B", 1, status="Broken")]
    with pytest.raises(InsufficientCapacityError) as excinfo:
        plan_assignments(["i1", "i2"], full, "round-robin")
    assert (excinfo.value.needed, excinfo.value.available) == (2, 0)

    plan = plan_assignments(["i1", "i2"], full, "round-robin", allow_partial=True)
    assert plan.assignments == []
    assert plan.shortfall == 2
    assert plan.warnings == ["Partial assignment: only 0 of 2 items could be assigned"]

    with pytest.raises(AllocationError, match="No available slots found"):
        plan_assignments(["i1"], [_slot("A", 1)], "round-robin", excluded_device_ids=["A"])
