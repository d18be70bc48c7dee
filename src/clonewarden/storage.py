from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import (
    ACTIVE_SESSION_STATUSES,
    FINISHED_SESSION_STATUSES,
    Assignment,
    Item,
    ScrapingError,
    Session,
    Slot,
)
from .utils import json_dumps, json_loads_or, utc_now_iso


class AssignmentConflict(RuntimeError):
    pass


def init_db(path: str) -> DBConn:
    return connect_db(path)


_SESSION_COLUMNS = """
    id, work_type, status, item_ids_json, batch_size, cost_limit, priority,
    triggered_by, trigger_source, max_concurrent_requests, completed_count,
    failed_count, skipped_count, request_units, actual_cost, error_count,
    last_error, progress, estimated_units, estimated_cost, created_at,
    started_at, ended_at, updated_at
"""

PROGRESS_FIELDS = {
    "completed_count",
    "failed_count",
    "skipped_count",
    "request_units",
    "actual_cost",
    "error_count",
    "last_error",
    "progress",
}

TRANSITION_FIELDS = PROGRESS_FIELDS | {"started_at", "ended_at"}


def create_session(
    conn: Any,
    *,
    work_type: str,
    item_ids: list[str],
    batch_size: int,
    cost_limit: float,
    priority: str,
    triggered_by: str,
    trigger_source: str,
    max_concurrent_requests: int,
    estimated_units: int,
    estimated_cost: float,
    status: str = "PENDING",
    session_id: str | None = None,
) -> str:
    session_id = session_id or str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO scraping_sessions
            (id, work_type, status, item_ids_json, batch_size, cost_limit, priority,
             triggered_by, trigger_source, max_concurrent_requests, estimated_units,
             estimated_cost, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            work_type,
            status,
            json_dumps(list(item_ids)),
            batch_size,
            cost_limit,
            priority,
            triggered_by,
            trigger_source,
            max_concurrent_requests,
            estimated_units,
            estimated_cost,
            now,
            now,
        ),
    )
    conn.commit()
    return session_id


def get_session(conn: Any, session_id: str) -> Session | None:
    row = conn.execute(
        f"SELECT {_SESSION_COLUMNS} FROM scraping_sessions WHERE id = ?",
        (session_id,),
    ).fetchone()
    if not row:
        return None
    return _session_from_row(row)


def list_sessions(
    conn: Any,
    status: str | None = None,
    work_type: str | None = None,
    limit: int = 50,
) -> list[Session]:
    clauses = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if work_type:
        clauses.append("work_type = ?")
        params.append(work_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM scraping_sessions
        {where}
        ORDER BY created_at DESC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_session_from_row(row) for row in rows]


def update_session_progress(conn: Any, session_id: str, counters: dict[str, object]) -> None:
    unknown = set(counters) - PROGRESS_FIELDS
    if unknown:
        raise ValueError(f"unknown progress fields: {', '.join(sorted(unknown))}")
    if not counters:
        return
    assignments = ", ".join(f"{key} = ?" for key in counters)
    params = list(counters.values()) + [utc_now_iso(), session_id]
    conn.execute(
        f"UPDATE scraping_sessions SET {assignments}, updated_at = ? WHERE id = ?",
        tuple(params),
    )
    conn.commit()


def transition_session(
    conn: Any,
    session_id: str,
    from_status: str,
    to_status: str,
    fields: dict[str, object] | None = None,
) -> bool:
    fields = dict(fields or {})
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"unknown session fields: {', '.join(sorted(unknown))}")
    sets = ["status = ?", "updated_at = ?"]
    params: list[object] = [to_status, utc_now_iso()]
    for key, value in fields.items():
        sets.append(f"{key} = ?")
        params.append(value)
    params.extend([session_id, from_status])
    cursor = conn.execute(
        f"UPDATE scraping_sessions SET {', '.join(sets)} WHERE id = ? AND status = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def increment_skipped(conn: Any, session_id: str, count: int = 1) -> None:
    conn.execute(
        """
        UPDATE scraping_sessions
        SET skipped_count = skipped_count + ?, updated_at = ?
        WHERE id = ?
        """,
        (count, utc_now_iso(), session_id),
    )
    conn.commit()


def count_active_sessions(conn: Any) -> int:
    placeholders = ",".join(["?"] * len(ACTIVE_SESSION_STATUSES))
    row = conn.execute(
        f"SELECT COUNT(*) FROM scraping_sessions WHERE status IN ({placeholders})",
        tuple(ACTIVE_SESSION_STATUSES),
    ).fetchone()
    return int(row[0]) if row else 0


def historical_error_rate(conn: Any, work_type: str, default: float = 0.1) -> float:
    placeholders = ",".join(["?"] * len(FINISHED_SESSION_STATUSES))
    row = conn.execute(
        f"""
        SELECT COALESCE(SUM(failed_count), 0),
               COALESCE(SUM(completed_count + failed_count + skipped_count), 0)
        FROM scraping_sessions
        WHERE work_type = ? AND status IN ({placeholders})
        """,
        (work_type, *FINISHED_SESSION_STATUSES),
    ).fetchone()
    if not row or not row[1]:
        return default
    return float(row[0]) / float(row[1])


def record_session_event(
    conn: Any,
    session_id: str,
    action: str,
    from_status: str,
    to_status: str,
    reason: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO session_events (session_id, action, from_status, to_status, reason, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (session_id, action, from_status, to_status, reason, utc_now_iso()),
    )
    conn.commit()


def list_session_events(conn: Any, session_id: str) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT action, from_status, to_status, reason, created_at
        FROM session_events
        WHERE session_id = ?
        ORDER BY id ASC
        """,
        (session_id,),
    ).fetchall()
    return [
        {
            "action": row[0],
            "from_status": row[1],
            "to_status": row[2],
            "reason": row[3],
            "created_at": row[4],
        }
        for row in rows
    ]


def record_session_error(conn: Any, error: ScrapingError) -> None:
    conn.execute(
        """
        INSERT INTO session_errors
            (session_id, item_id, error_type, severity, code, message, retryable, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            error.session_id or "",
            error.item_id,
            error.type,
            error.severity,
            str(error.code),
            error.message,
            1 if error.retryable else 0,
            error.timestamp.isoformat(),
        ),
    )
    conn.commit()


def list_session_errors(conn: Any, session_id: str, limit: int = 200) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT item_id, error_type, severity, code, message, retryable, created_at
        FROM session_errors
        WHERE session_id = ?
        ORDER BY id ASC
        LIMIT ?
        """,
        (session_id, limit),
    ).fetchall()
    return [
        {
            "item_id": row[0],
            "type": row[1],
            "severity": row[2],
            "code": row[3],
            "message": row[4],
            "retryable": bool(row[5]),
            "timestamp": row[6],
        }
        for row in rows
    ]


def upsert_item(conn: Any, item_id: str, username: str, status: str = "Unused") -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO items (id, username, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            username = excluded.username,
            status = excluded.status,
            updated_at = excluded.updated_at
        """,
        (item_id, username, status, now, now),
    )
    conn.commit()


def get_item(conn: Any, item_id: str) -> Item | None:
    row = conn.execute(
        """
        SELECT id, username, status, assigned_device_id, assigned_slot_number,
               assigned_at, last_success_at
        FROM items
        WHERE id = ?
        """,
        (item_id,),
    ).fetchone()
    if not row:
        return None
    return _item_from_row(row)


def list_items(
    conn: Any,
    item_ids: Iterable[str] | None = None,
    status: str | None = None,
    unassigned_only: bool = False,
) -> list[Item]:
    clauses = []
    params: list[object] = []
    if item_ids is not None:
        ids = list(item_ids)
        if not ids:
            return []
        clauses.append(f"id IN ({','.join(['?'] * len(ids))})")
        params.extend(ids)
    if status:
        clauses.append("status = ?")
        params.append(status)
    if unassigned_only:
        clauses.append("assigned_device_id IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT id, username, status, assigned_device_id, assigned_slot_number,
               assigned_at, last_success_at
        FROM items
        {where}
        ORDER BY username ASC
        """,
        tuple(params),
    ).fetchall()
    return [_item_from_row(row) for row in rows]


def mark_item_success(conn: Any, item_id: str, when: str | None = None) -> None:
    when = when or utc_now_iso()
    conn.execute(
        "UPDATE items SET last_success_at = ?, updated_at = ? WHERE id = ?",
        (when, utc_now_iso(), item_id),
    )
    conn.commit()


def get_item_last_success(conn: Any, item_id: str) -> str | None:
    row = conn.execute(
        "SELECT last_success_at FROM items WHERE id = ?",
        (item_id,),
    ).fetchone()
    return row[0] if row else None


def upsert_slot(
    conn: Any,
    device_id: str,
    slot_number: int,
    status: str = "Available",
    health: str = "unknown",
    device_name: str | None = None,
    package_name: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO slots (device_id, slot_number, status, health, device_name, package_name, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(device_id, slot_number) DO UPDATE SET
            status = excluded.status,
            health = excluded.health,
            device_name = excluded.device_name,
            package_name = excluded.package_name,
            updated_at = excluded.updated_at
        """,
        (device_id, slot_number, status, health, device_name, package_name, utc_now_iso()),
    )
    conn.commit()


def get_slot(conn: Any, device_id: str, slot_number: int) -> Slot | None:
    row = conn.execute(
        """
        SELECT device_id, slot_number, status, current_item_id, health, device_name, package_name
        FROM slots
        WHERE device_id = ? AND slot_number = ?
        """,
        (device_id, slot_number),
    ).fetchone()
    if not row:
        return None
    return _slot_from_row(row)


def list_slots(
    conn: Any,
    status: str | None = None,
    device_ids: Iterable[str] | None = None,
    vacant_only: bool = False,
) -> list[Slot]:
    clauses = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if device_ids is not None:
        ids = list(device_ids)
        if not ids:
            return []
        clauses.append(f"device_id IN ({','.join(['?'] * len(ids))})")
        params.extend(ids)
    if vacant_only:
        clauses.append("current_item_id IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT device_id, slot_number, status, current_item_id, health, device_name, package_name
        FROM slots
        {where}
        ORDER BY device_id ASC, slot_number ASC
        """,
        tuple(params),
    ).fetchall()
    return [_slot_from_row(row) for row in rows]


def list_available_slots(conn: Any) -> list[Slot]:
    return list_slots(conn, status="Available", vacant_only=True)


def device_load_snapshot(conn: Any) -> dict[str, dict[str, int]]:
    rows = conn.execute(
        """
        SELECT device_id,
               SUM(CASE WHEN status NOT IN ('Broken', 'Maintenance') THEN 1 ELSE 0 END),
               SUM(CASE WHEN current_item_id IS NOT NULL THEN 1 ELSE 0 END),
               SUM(CASE WHEN status = 'Available' AND current_item_id IS NULL THEN 1 ELSE 0 END),
               COUNT(*)
        FROM slots
        GROUP BY device_id
        ORDER BY device_id ASC
        """
    ).fetchall()
    return {
        row[0]: {
            "capacity": int(row[1] or 0),
            "usage": int(row[2] or 0),
            "available": int(row[3] or 0),
            "total": int(row[4] or 0),
        }
        for row in rows
    }


def apply_assignments(conn: Any, assignments: list[Assignment]) -> None:
    now = utc_now_iso()
    with conn.transaction():
        for assignment in assignments:
            cursor = conn.execute(
                """
                UPDATE slots
                SET status = 'Assigned', current_item_id = ?, updated_at = ?
                WHERE device_id = ? AND slot_number = ?
                  AND status = 'Available' AND current_item_id IS NULL
                """,
                (assignment.item_id, now, assignment.device_id, assignment.slot_number),
            )
            if cursor.rowcount != 1:
                raise AssignmentConflict(
                    f"slot {assignment.device_id}#{assignment.slot_number} is no longer available"
                )
            cursor = conn.execute(
                """
                UPDATE items
                SET status = 'Assigned', assigned_device_id = ?, assigned_slot_number = ?,
                    assigned_at = ?, updated_at = ?
                WHERE id = ? AND status = 'Unused' AND assigned_device_id IS NULL
                """,
                (assignment.device_id, assignment.slot_number, now, now, assignment.item_id),
            )
            if cursor.rowcount != 1:
                raise AssignmentConflict(f"item {assignment.item_id} is no longer unassigned")


def unassign_slot(conn: Any, device_id: str, slot_number: int) -> str | None:
    now = utc_now_iso()
    with conn.transaction():
        row = conn.execute(
            "SELECT current_item_id, status FROM slots WHERE device_id = ? AND slot_number = ?",
            (device_id, slot_number),
        ).fetchone()
        if not row:
            raise AssignmentConflict(f"slot {device_id}#{slot_number} does not exist")
        item_id = row[0]
        # Broken and Maintenance slots keep their status unless they hold an item
        if not item_id and row[1] not in ("Assigned", "LoggedIn"):
            return None
        conn.execute(
            """
            UPDATE slots
            SET status = 'Available', current_item_id = NULL, updated_at = ?
            WHERE device_id = ? AND slot_number = ?
            """,
            (now, device_id, slot_number),
        )
        if item_id:
            conn.execute(
                """
                UPDATE items
                SET status = 'Unused', assigned_device_id = NULL, assigned_slot_number = NULL,
                    assigned_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (now, item_id),
            )
    return item_id


def _session_from_row(row: Any) -> Session:
    return Session(
        id=row[0],
        work_type=row[1],
        status=row[2],
        item_ids=list(json_loads_or(row[3], [])),
        batch_size=int(row[4]),
        cost_limit=float(row[5]),
        priority=row[6],
        triggered_by=row[7],
        trigger_source=row[8],
        max_concurrent_requests=int(row[9]),
        completed_count=int(row[10]),
        failed_count=int(row[11]),
        skipped_count=int(row[12]),
        request_units=int(row[13]),
        actual_cost=float(row[14]),
        error_count=int(row[15]),
        last_error=row[16],
        progress=float(row[17]),
        estimated_units=int(row[18]),
        estimated_cost=float(row[19]),
        created_at=row[20],
        started_at=row[21],
        ended_at=row[22],
        updated_at=row[23],
    )


def _item_from_row(row: Any) -> Item:
    return Item(
        id=row[0],
        username=row[1],
        status=row[2],
        assigned_device_id=row[3],
        assigned_slot_number=row[4],
        assigned_at=row[5],
        last_success_at=row[6],
    )


def _slot_from_row(row: Any) -> Slot:
    return Slot(
        device_id=row[0],
        slot_number=int(row[1]),
        status=row[2],
        current_item_id=row[3],
        health=row[4],
        device_name=row[5],
        package_name=row[6],
    )


def session_to_dict(session: Session) -> dict[str, object]:
    payload = json.loads(json_dumps(session))
    payload["total_items"] = session.total_items
    payload["processed_count"] = session.processed_count
    return payload
