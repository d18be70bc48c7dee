from __future__ import annotations

import heapq
import logging
import random
from typing import Any, Callable, Iterable

from .models import AllocationPlan, Assignment, Slot
from .storage import (
    AssignmentConflict,
    device_load_snapshot,
    list_available_slots,
    list_items,
    unassign_slot,
    apply_assignments,
)
from .utils import log_event

Snapshot = dict[str, dict[str, int]]
Strategy = Callable[[list[str], list[Slot], Snapshot, random.Random], list[Assignment]]


class AllocationError(ValueError):
    pass


class InsufficientCapacityError(AllocationError):
    def __init__(self, needed: int, available: int) -> None:
        super().__init__(
            f"Insufficient capacity. Need {needed} slots, but only {available} available"
        )
        self.needed = needed
        self.available = available


def _group_by_device(slots: Iterable[Slot]) -> dict[str, list[Slot]]:
    grouped: dict[str, list[Slot]] = {}
    for slot in slots:
        grouped.setdefault(slot.device_id, []).append(slot)
    for device_slots in grouped.values():
        device_slots.sort(key=lambda slot: slot.slot_number)
    return grouped


def _pair(item_id: str, slot: Slot) -> Assignment:
    return Assignment(item_id=item_id, device_id=slot.device_id, slot_number=slot.slot_number)


def round_robin(items: list[str], slots: list[Slot], snapshot: Snapshot, rng: random.Random) -> list[Assignment]:
    grouped = _group_by_device(slots)
    devices = sorted(grouped)
    assignments: list[Assignment] = []
    if not devices:
        return assignments
    cursor = 0
    for item_id in items:
        for _ in range(len(devices)):
            device_slots = grouped[devices[cursor]]
            if device_slots:
                assignments.append(_pair(item_id, device_slots.pop(0)))
                break
            cursor = (cursor + 1) % len(devices)
        else:
            break
        cursor = (cursor + 1) % len(devices)
    return assignments


def fill_first(items: list[str], slots: list[Slot], snapshot: Snapshot, rng: random.Random) -> list[Assignment]:
    ordered = sorted(slots, key=lambda slot: (slot.device_id, slot.slot_number))
    return [_pair(item_id, slot) for item_id, slot in zip(items, ordered)]


def capacity_based(items: list[str], slots: list[Slot], snapshot: Snapshot, rng: random.Random) -> list[Assignment]:
    grouped = _group_by_device(slots)
    devices = sorted(grouped, key=lambda device_id: (-len(grouped[device_id]), device_id))
    queue = [slot for device_id in devices for slot in grouped[device_id]]
    return [_pair(item_id, slot) for item_id, slot in zip(items, queue)]


def balanced_load(items: list[str], slots: list[Slot], snapshot: Snapshot, rng: random.Random) -> list[Assignment]:
    grouped = _group_by_device(slots)
    heap = [
        (snapshot.get(device_id, {}).get("usage", 0), device_id)
        for device_id in grouped
    ]
    heapq.heapify(heap)
    assignments: list[Assignment] = []
    for item_id in items:
        if not heap:
            break
        load, device_id = heapq.heappop(heap)
        device_slots = grouped[device_id]
        assignments.append(_pair(item_id, device_slots.pop(0)))
        if device_slots:
            heapq.heappush(heap, (load + 1, device_id))
    return assignments


def optimal_distribution(
    items: list[str], slots: list[Slot], snapshot: Snapshot, rng: random.Random
) -> list[Assignment]:
    grouped = _group_by_device(slots)
    usage: dict[str, int] = {}
    capacity: dict[str, int] = {}
    for device_id, device_slots in grouped.items():
        info = snapshot.get(device_id, {})
        usage[device_id] = info.get("usage", 0)
        capacity[device_id] = max(info.get("capacity", 0), usage[device_id] + len(device_slots))

    def efficiency(device_id: str) -> float:
        total = capacity[device_id]
        return (total - usage[device_id]) / total if total > 0 else 0.0

    remaining = sorted(grouped, key=lambda device_id: (-efficiency(device_id), device_id))
    assignments: list[Assignment] = []
    for item_id in items:
        if not remaining:
            break
        weights = [efficiency(device_id) for device_id in remaining]
        total_weight = sum(weights)
        selected = remaining[0]
        if total_weight > 0:
            threshold = rng.random() * total_weight
            for device_id, weight in zip(remaining, weights):
                threshold -= weight
                if threshold <= 0:
                    selected = device_id
                    break
            else:
                selected = remaining[-1]
        assignments.append(_pair(item_id, grouped[selected].pop(0)))
        usage[selected] += 1
        if not grouped[selected]:
            remaining.remove(selected)
    return assignments


STRATEGIES: dict[str, Strategy] = {
    "round-robin": round_robin,
    "fill-first": fill_first,
    "capacity-based": capacity_based,
    "balanced-load": balanced_load,
    "optimal-distribution": optimal_distribution,
}


def filter_candidate_slots(
    slots: Iterable[Slot],
    *,
    device_id: str | None = None,
    preferred_device_ids: Iterable[str] = (),
    excluded_device_ids: Iterable[str] = (),
) -> list[Slot]:
    preferred = list(dict.fromkeys(preferred_device_ids))
    excluded = set(excluded_device_ids)
    candidates = [
        slot for slot in slots if slot.status == "Available" and slot.current_item_id is None
    ]
    if device_id:
        if device_id in excluded:
            raise AllocationError("Specified device is in exclusion list")
        allowed: set[str] | None = {device_id}
    elif preferred:
        allowed = {value for value in preferred if value not in excluded}
        if not allowed:
            raise AllocationError("All preferred devices are excluded")
    else:
        allowed = None
    available = candidates
    candidates = [
        slot
        for slot in available
        if slot.device_id not in excluded and (allowed is None or slot.device_id in allowed)
    ]
    # an empty pool is a capacity shortfall; only the device filters fail fast
    if not candidates and available:
        filters = []
        if device_id:
            filters.append(f"device={device_id}")
        if preferred:
            filters.append(f"preferred={','.join(preferred)}")
        if excluded:
            filters.append(f"excluded={','.join(sorted(excluded))}")
        raise AllocationError(f"No available slots found (filters: {'; '.join(filters)})")
    return sorted(candidates, key=lambda slot: (slot.device_id, slot.slot_number))


def apply_device_caps(slots: list[Slot], max_items_per_device: int, snapshot: Snapshot) -> list[Slot]:
    kept: list[Slot] = []
    kept_per_device: dict[str, int] = {}
    for slot in slots:
        current = snapshot.get(slot.device_id, {}).get("usage", 0)
        count = kept_per_device.get(slot.device_id, 0)
        if current + count < max_items_per_device:
            kept.append(slot)
            kept_per_device[slot.device_id] = count + 1
    return kept


def plan_assignments(
    item_ids: list[str],
    slots: list[Slot],
    strategy: str,
    *,
    device_id: str | None = None,
    preferred_device_ids: Iterable[str] = (),
    excluded_device_ids: Iterable[str] = (),
    max_items_per_device: int | None = None,
    allow_partial: bool = False,
    snapshot: Snapshot | None = None,
    rng: random.Random | None = None,
) -> AllocationPlan:
    handler = STRATEGIES.get(strategy)
    if handler is None:
        raise AllocationError(
            f"Unknown allocation strategy: {strategy}. Must be one of: {', '.join(STRATEGIES)}"
        )
    items = list(dict.fromkeys(item_ids))
    candidates = filter_candidate_slots(
        slots,
        device_id=device_id,
        preferred_device_ids=preferred_device_ids,
        excluded_device_ids=excluded_device_ids,
    )
    if snapshot is None:
        snapshot = {}
        for slot in candidates:
            entry = snapshot.setdefault(slot.device_id, {"capacity": 0, "usage": 0})
            entry["capacity"] += 1
    if max_items_per_device is not None:
        if max_items_per_device < 1:
            raise AllocationError("max_items_per_device must be at least 1")
        candidates = apply_device_caps(candidates, max_items_per_device, snapshot)

    warnings: list[str] = []
    shortfall = 0
    if len(candidates) < len(items):
        if not allow_partial:
            raise InsufficientCapacityError(len(items), len(candidates))
        shortfall = len(items) - len(candidates)
        warnings.append(
            f"Partial assignment: only {len(candidates)} of {len(items)} items could be assigned"
        )
        items = items[: len(candidates)]

    assignments = handler(items, candidates, snapshot, rng or random.Random())
    return AllocationPlan(
        assignments=assignments,
        requested=len(items) + shortfall,
        shortfall=shortfall,
        warnings=warnings,
    )


def assign_items(
    conn: Any,
    item_ids: list[str],
    strategy: str = "round-robin",
    *,
    device_id: str | None = None,
    preferred_device_ids: Iterable[str] = (),
    excluded_device_ids: Iterable[str] = (),
    max_items_per_device: int | None = None,
    allow_partial: bool = False,
    rng: random.Random | None = None,
) -> AllocationPlan:
    logger = logging.getLogger("clonewarden.allocator")
    by_id = {item.id: item for item in list_items(conn, item_ids=item_ids, unassigned_only=True)}
    pending = [
        item_id
        for item_id in dict.fromkeys(item_ids)
        if item_id in by_id and by_id[item_id].status == "Unused"
    ]
    if not pending:
        return AllocationPlan(
            assignments=[],
            requested=0,
            warnings=["No unassigned items to process"],
        )

    plan = plan_assignments(
        pending,
        list_available_slots(conn),
        strategy,
        device_id=device_id,
        preferred_device_ids=preferred_device_ids,
        excluded_device_ids=excluded_device_ids,
        max_items_per_device=max_items_per_device,
        allow_partial=allow_partial,
        snapshot=device_load_snapshot(conn),
        rng=rng,
    )
    try:
        apply_assignments(conn, plan.assignments)
    except AssignmentConflict as exc:
        log_event(logger, logging.WARNING, "assignment_conflict", error=str(exc))
        raise AllocationError(f"Assignment aborted, nothing was applied: {exc}") from exc
    log_event(
        logger,
        logging.INFO,
        "items_assigned",
        strategy=strategy,
        assigned=len(plan.assignments),
        shortfall=plan.shortfall,
    )
    return plan


def unassign(conn: Any, device_id: str, slot_number: int) -> str | None:
    logger = logging.getLogger("clonewarden.allocator")
    try:
        item_id = unassign_slot(conn, device_id, slot_number)
    except AssignmentConflict as exc:
        raise AllocationError(str(exc)) from exc
    log_event(
        logger,
        logging.INFO,
        "slot_unassigned",
        device_id=device_id,
        slot_number=slot_number,
        item_id=item_id,
    )
    return item_id


def capacity_report(conn: Any) -> list[dict[str, object]]:
    rows = []
    for device_id, info in device_load_snapshot(conn).items():
        capacity = info["capacity"]
        utilization = info["usage"] / capacity if capacity else 0.0
        if capacity == 0:
            status = "offline"
        elif info["available"] == 0:
            status = "full"
        elif utilization >= 0.8:
            status = "near_capacity"
        else:
            status = "available"
        rows.append(
            {
                "device_id": device_id,
                "total_slots": info["total"],
                "capacity": capacity,
                "used": info["usage"],
                "available": info["available"],
                "utilization": round(utilization, 4),
                "status": status,
            }
        )
    return rows
