from __future__ import annotations

import dataclasses
import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .allocator import AllocationError, InsufficientCapacityError, assign_items, capacity_report, unassign
from .config import Config, ConfigError, load_config
from .notify import LoggingNotifier
from .orchestrator import BulkConfigError, BulkJobConfig, BulkOrchestrator
from .patterns import ErrorPatternAnalyzer
from .sessions import (
    InvalidTransitionError,
    SessionNotFoundError,
    SessionStateManager,
    UnknownActionError,
)
from .storage import (
    get_session,
    init_db,
    list_session_errors,
    list_session_events,
    list_sessions,
    session_to_dict,
)
from .utils import configure_logging, log_event

app = FastAPI(title="clonewarden Admin API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
app.state.analyzer = None

BULK_OPERATIONS = ["create", "execute", "create_and_execute"]


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("CW_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class ControlRequest(BaseModel):
    action: str


class AssignmentRequest(BaseModel):
    item_ids: list[str]
    strategy: str | None = None
    device_id: str | None = None
    preferred_device_ids: list[str] = []
    excluded_device_ids: list[str] = []
    max_items_per_device: int | None = None
    allow_partial: bool = False


class BulkRequest(BaseModel):
    operation: str
    session_id: str | None = None
    work_type: str | None = None
    item_ids: list[str] = []
    batch_size: int = 5
    max_concurrent_requests: int = 3
    cost_limit: float = 10.0
    priority: str = "NORMAL"
    triggered_by: str = "USER"
    trigger_source: str = "API"


class RiskRequest(BaseModel):
    work_type: str
    item_ids: list[str]


def _get_config() -> Config:
    try:
        return load_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _get_conn(config: Config):
    return init_db(config.paths.state_db)


def _get_analyzer(config: Config) -> ErrorPatternAnalyzer:
    if app.state.analyzer is None:
        app.state.analyzer = ErrorPatternAnalyzer(history_size=config.patterns.history_size)
    return app.state.analyzer


def _build_orchestrator(conn, config: Config) -> BulkOrchestrator:
    return BulkOrchestrator(
        conn,
        config=config,
        notifier=LoggingNotifier(),
        analyzer=_get_analyzer(config),
    )


def _run_session(session_id: str) -> None:
    logger = logging.getLogger("clonewarden.admin")
    config = load_config()
    conn = _get_conn(config)
    try:
        _build_orchestrator(conn, config).execute_session(session_id)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "bulk_execute_failed", session_id=session_id, error=str(exc))
    finally:
        conn.close()


router = APIRouter(dependencies=[Depends(_require_admin_token)])


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "clonewarden Admin API"}


@router.get("/sessions")
def sessions_list(status: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        return [session_to_dict(session) for session in list_sessions(conn, status=status, limit=limit)]
    finally:
        conn.close()


@router.get("/sessions/{session_id}")
def sessions_get(session_id: str) -> dict[str, object]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        session = get_session(conn, session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="session_not_found")
        return session_to_dict(session)
    finally:
        conn.close()


@router.get("/sessions/{session_id}/errors")
def sessions_errors(session_id: str, limit: int = 200) -> list[dict[str, object]]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        return list_session_errors(conn, session_id, limit=limit)
    finally:
        conn.close()


@router.get("/sessions/{session_id}/events")
def sessions_events(session_id: str) -> list[dict[str, object]]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        return list_session_events(conn, session_id)
    finally:
        conn.close()


@router.post("/sessions/{session_id}/control")
def sessions_control(session_id: str, payload: ControlRequest) -> dict[str, object]:
    logger = logging.getLogger("clonewarden.admin")
    config = _get_config()
    conn = _get_conn(config)
    try:
        manager = SessionStateManager(conn, LoggingNotifier())
        try:
            result = manager.control(session_id, payload.action)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (InvalidTransitionError, UnknownActionError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    log_event(logger, logging.INFO, "session_control", **result)
    return result


@router.post("/assignments")
def assignments_create(payload: AssignmentRequest) -> dict[str, object]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        plan = assign_items(
            conn,
            payload.item_ids,
            payload.strategy or config.allocation.default_strategy,
            device_id=payload.device_id,
            preferred_device_ids=payload.preferred_device_ids,
            excluded_device_ids=payload.excluded_device_ids,
            max_items_per_device=payload.max_items_per_device,
            allow_partial=payload.allow_partial,
        )
    except InsufficientCapacityError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AllocationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {
        "assigned": len(plan.assignments),
        "assignments": [dataclasses.asdict(assignment) for assignment in plan.assignments],
        "shortfall": plan.shortfall,
        "warnings": plan.warnings,
    }


@router.delete("/assignments/{device_id}/{slot_number}")
def assignments_delete(device_id: str, slot_number: int) -> dict[str, object]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        item_id = unassign(conn, device_id, slot_number)
    except AllocationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"device_id": device_id, "slot_number": slot_number, "item_id": item_id}


@router.get("/capacity")
def capacity() -> list[dict[str, object]]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        return capacity_report(conn)
    finally:
        conn.close()


@router.post("/bulk")
def bulk(payload: BulkRequest, background_tasks: BackgroundTasks):
    logger = logging.getLogger("clonewarden.admin")
    operation = payload.operation.strip().lower()
    if operation not in BULK_OPERATIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid operation. Must be one of: {', '.join(BULK_OPERATIONS)}",
        )
    config = _get_config()
    conn = _get_conn(config)
    try:
        if operation == "execute":
            if not payload.session_id:
                raise HTTPException(status_code=400, detail="session_id is required for execute")
            session = get_session(conn, payload.session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="session_not_found")
            session_id = session.id
        else:
            job = BulkJobConfig(
                work_type=payload.work_type or "",
                item_ids=list(payload.item_ids),
                batch_size=payload.batch_size,
                max_concurrent_requests=payload.max_concurrent_requests,
                cost_limit=payload.cost_limit,
                priority=payload.priority,
                triggered_by=payload.triggered_by,
                trigger_source=payload.trigger_source,
            )
            try:
                session_id = _build_orchestrator(conn, config).create_session(job)
            except BulkConfigError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        session = get_session(conn, session_id)
    finally:
        conn.close()

    body = {"operation": operation, "session": session_to_dict(session)}
    if operation == "create":
        return body
    background_tasks.add_task(_run_session, session_id)
    log_event(logger, logging.INFO, "bulk_execute_queued", session_id=session_id)
    return JSONResponse(status_code=202, content=body)


@router.post("/bulk/risk")
def bulk_risk(payload: RiskRequest) -> dict[str, object]:
    config = _get_config()
    conn = _get_conn(config)
    try:
        orchestrator = _build_orchestrator(conn, config)
        risk = orchestrator.assess_risk(
            BulkJobConfig(work_type=payload.work_type, item_ids=list(payload.item_ids))
        )
    finally:
        conn.close()
    return dataclasses.asdict(risk)


@router.get("/analytics/patterns")
def analytics_patterns() -> dict[str, object]:
    analyzer = _get_analyzer(_get_config())
    return {
        "analytics": analyzer.system_analytics(),
        "patterns": [dataclasses.asdict(pattern) for pattern in analyzer.patterns()],
    }


app.include_router(router)


@app.on_event("startup")
def _startup() -> None:
    configure_logging("clonewarden.admin")
