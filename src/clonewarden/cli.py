from __future__ import annotations

import argparse
import dataclasses
import json
import logging

import uvicorn

from .allocator import AllocationError, assign_items, capacity_report, unassign
from .config import ALLOCATION_STRATEGIES, Config, ConfigError, load_config
from .models import PRIORITIES, SLOT_STATUSES, WORK_TYPES
from .notify import LoggingNotifier
from .orchestrator import BulkConfigError, BulkJobConfig, BulkOrchestrator
from .sessions import PUBLIC_ACTIONS, SessionError, SessionStateManager
from .storage import (
    get_session,
    init_db,
    list_items,
    list_session_errors,
    list_sessions,
    list_slots,
    session_to_dict,
    upsert_item,
    upsert_slot,
)
from .utils import configure_logging, json_dumps, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("clonewarden")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    if getattr(args, "mock", False):
        config = dataclasses.replace(
            config, upstream=dataclasses.replace(config.upstream, mock_mode=True)
        )
    return config


def _print(payload: object) -> None:
    print(json.dumps(json.loads(json_dumps(payload)), indent=2, sort_keys=True))


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    init_db(config.paths.state_db).close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_items_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        upsert_item(conn, args.id, args.username or args.id, status=args.status)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "item_added", item_id=args.id)
    return 0


def _cmd_items_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        items = list_items(conn, status=args.status, unassigned_only=args.unassigned)
    finally:
        conn.close()
    for item in items:
        log_event(
            logger,
            logging.INFO,
            "item",
            item_id=item.id,
            username=item.username,
            status=item.status,
            device_id=item.assigned_device_id,
            slot_number=item.assigned_slot_number,
        )
    log_event(logger, logging.INFO, "items_listed", count=len(items))
    return 0


def _cmd_slots_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        for slot_number in range(1, args.count + 1):
            upsert_slot(
                conn,
                args.device_id,
                slot_number,
                status=args.status,
                device_name=args.device_name,
            )
    finally:
        conn.close()
    log_event(logger, logging.INFO, "slots_added", device_id=args.device_id, count=args.count)
    return 0


def _cmd_slots_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        slots = list_slots(
            conn,
            status=args.status,
            device_ids=[args.device_id] if args.device_id else None,
        )
    finally:
        conn.close()
    for slot in slots:
        log_event(
            logger,
            logging.INFO,
            "slot",
            device_id=slot.device_id,
            slot_number=slot.slot_number,
            status=slot.status,
            item_id=slot.current_item_id,
        )
    log_event(logger, logging.INFO, "slots_listed", count=len(slots))
    return 0


def _cmd_assign(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        plan = assign_items(
            conn,
            args.item_ids,
            args.strategy or config.allocation.default_strategy,
            device_id=args.device_id,
            preferred_device_ids=args.prefer,
            excluded_device_ids=args.exclude,
            max_items_per_device=args.max_per_device,
            allow_partial=args.partial,
        )
    except AllocationError as exc:
        log_event(logger, logging.ERROR, "assign_error", error=str(exc))
        return 1
    finally:
        conn.close()
    for warning in plan.warnings:
        log_event(logger, logging.WARNING, "assign_warning", warning=warning)
    _print(plan)
    return 0


def _cmd_unassign(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        item_id = unassign(conn, args.device_id, args.slot_number)
    except AllocationError as exc:
        log_event(logger, logging.ERROR, "unassign_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _print({"device_id": args.device_id, "slot_number": args.slot_number, "item_id": item_id})
    return 0


def _cmd_capacity(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        _print(capacity_report(conn))
    finally:
        conn.close()
    return 0


def _cmd_sessions_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        sessions = list_sessions(conn, status=args.status, limit=args.limit)
    finally:
        conn.close()
    for session in sessions:
        log_event(
            logger,
            logging.INFO,
            "session",
            session_id=session.id,
            work_type=session.work_type,
            status=session.status,
            progress=session.progress,
            items=session.total_items,
        )
    log_event(logger, logging.INFO, "sessions_listed", count=len(sessions))
    return 0


def _cmd_sessions_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        session = get_session(conn, args.session_id)
        errors = list_session_errors(conn, args.session_id) if session else []
    finally:
        conn.close()
    if session is None:
        log_event(logger, logging.ERROR, "session_not_found", session_id=args.session_id)
        return 1
    _print({"session": session_to_dict(session), "errors": errors})
    return 0


def _cmd_sessions_control(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        result = SessionStateManager(conn, LoggingNotifier()).control(args.session_id, args.action)
    except SessionError as exc:
        log_event(logger, logging.ERROR, "session_control_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _print(result)
    return 0


def _job_from_args(args: argparse.Namespace, config: Config) -> BulkJobConfig:
    return BulkJobConfig(
        work_type=args.work_type,
        item_ids=list(args.item_ids),
        batch_size=args.batch_size or config.bulk.default_batch_size,
        max_concurrent_requests=args.max_concurrent,
        cost_limit=args.cost_limit,
        priority=args.priority,
        triggered_by="USER",
        trigger_source="MANUAL",
    )


def _cmd_bulk_create(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        session_id = BulkOrchestrator(conn, config=config).create_session(
            _job_from_args(args, config)
        )
        session = get_session(conn, session_id)
    except BulkConfigError as exc:
        log_event(logger, logging.ERROR, "bulk_config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _print(session_to_dict(session))
    return 0


def _run_and_report(orchestrator: BulkOrchestrator, session_id: str) -> int:
    result = orchestrator.execute_session(session_id)
    _print(result)
    return 0 if result.success else 2


def _cmd_bulk_execute(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        orchestrator = BulkOrchestrator(conn, config=config, notifier=LoggingNotifier())
        return _run_and_report(orchestrator, args.session_id)
    except SessionError as exc:
        log_event(logger, logging.ERROR, "bulk_execute_error", error=str(exc))
        return 1
    finally:
        conn.close()


def _cmd_bulk_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        orchestrator = BulkOrchestrator(conn, config=config, notifier=LoggingNotifier())
        job = _job_from_args(args, config)
        risk = orchestrator.assess_risk(job)
        if not risk.should_proceed and not args.force:
            log_event(
                logger,
                logging.ERROR,
                "bulk_risk_too_high",
                risk_level=risk.risk_level,
                risk_score=risk.risk_score,
                recommendations="; ".join(risk.recommendations),
            )
            return 1
        return _run_and_report(orchestrator, orchestrator.create_session(job))
    except BulkConfigError as exc:
        log_event(logger, logging.ERROR, "bulk_config_error", error=str(exc))
        return 1
    finally:
        conn.close()


def _cmd_risk(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        risk = BulkOrchestrator(conn, config=config).assess_risk(
            BulkJobConfig(work_type=args.work_type, item_ids=list(args.item_ids))
        )
    finally:
        conn.close()
    _print(risk)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    init_db(config.paths.state_db).close()
    log_event(logger, logging.INFO, "admin_serve", host=args.host, port=args.port)
    uvicorn.run("clonewarden.admin:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def _add_job_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("work_type", choices=WORK_TYPES, help="Kind of work to run per item")
    parser.add_argument("item_ids", nargs="+", help="Item ids to process, in order")
    parser.add_argument("--batch-size", type=int, default=None, help="Items per batch (1-50)")
    parser.add_argument(
        "--max-concurrent", type=int, default=3, help="Max concurrent requests (1-10)"
    )
    parser.add_argument("--cost-limit", type=float, default=10.0, help="Cost ceiling in dollars")
    parser.add_argument("--priority", choices=PRIORITIES, default="NORMAL")
    parser.add_argument(
        "--mock", action="store_true", help="Use synthetic upstream responses"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clonewarden", description="clonewarden CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to CW_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    items_parser = subparsers.add_parser("items", help="Manage work items")
    items_subparsers = items_parser.add_subparsers(dest="items_command", required=True)
    items_add = items_subparsers.add_parser("add", help="Add or update an item")
    items_add.add_argument("id", help="Item id")
    items_add.add_argument("--username", help="Upstream identifier (defaults to id)")
    items_add.add_argument("--status", default="Unused")
    items_add.set_defaults(func=_cmd_items_add)
    items_list = items_subparsers.add_parser("list", help="List items")
    items_list.add_argument("--status", default=None)
    items_list.add_argument("--unassigned", action="store_true")
    items_list.set_defaults(func=_cmd_items_list)

    slots_parser = subparsers.add_parser("slots", help="Manage device slots")
    slots_subparsers = slots_parser.add_subparsers(dest="slots_command", required=True)
    slots_add = slots_subparsers.add_parser("add", help="Register slots for a device")
    slots_add.add_argument("device_id")
    slots_add.add_argument("--count", type=int, default=1, help="Slots numbered 1..count")
    slots_add.add_argument("--status", choices=SLOT_STATUSES, default="Available")
    slots_add.add_argument("--device-name", default=None)
    slots_add.set_defaults(func=_cmd_slots_add)
    slots_list = slots_subparsers.add_parser("list", help="List slots")
    slots_list.add_argument("--device-id", default=None)
    slots_list.add_argument("--status", choices=SLOT_STATUSES, default=None)
    slots_list.set_defaults(func=_cmd_slots_list)

    assign_parser = subparsers.add_parser("assign", help="Assign items to free slots")
    assign_parser.add_argument("item_ids", nargs="+")
    assign_parser.add_argument("--strategy", choices=ALLOCATION_STRATEGIES, default=None)
    assign_parser.add_argument("--device-id", default=None, help="Restrict to one device")
    assign_parser.add_argument("--prefer", action="append", default=[], help="Preferred device")
    assign_parser.add_argument("--exclude", action="append", default=[], help="Excluded device")
    assign_parser.add_argument("--max-per-device", type=int, default=None)
    assign_parser.add_argument(
        "--partial", action="store_true", help="Assign what fits instead of failing"
    )
    assign_parser.set_defaults(func=_cmd_assign)

    unassign_parser = subparsers.add_parser("unassign", help="Release a slot")
    unassign_parser.add_argument("device_id")
    unassign_parser.add_argument("slot_number", type=int)
    unassign_parser.set_defaults(func=_cmd_unassign)

    capacity_parser = subparsers.add_parser("capacity", help="Per-device capacity report")
    capacity_parser.set_defaults(func=_cmd_capacity)

    sessions_parser = subparsers.add_parser("sessions", help="Inspect and control sessions")
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command", required=True)
    sessions_list = sessions_subparsers.add_parser("list", help="List recent sessions")
    sessions_list.add_argument("--status", default=None)
    sessions_list.add_argument("--limit", type=int, default=20)
    sessions_list.set_defaults(func=_cmd_sessions_list)
    sessions_show = sessions_subparsers.add_parser("show", help="Show a session and its errors")
    sessions_show.add_argument("session_id")
    sessions_show.set_defaults(func=_cmd_sessions_show)
    sessions_control = sessions_subparsers.add_parser("control", help="Apply a control action")
    sessions_control.add_argument("session_id")
    sessions_control.add_argument("action", type=str.upper, choices=PUBLIC_ACTIONS)
    sessions_control.set_defaults(func=_cmd_sessions_control)

    bulk_parser = subparsers.add_parser("bulk", help="Bulk scraping sessions")
    bulk_subparsers = bulk_parser.add_subparsers(dest="bulk_command", required=True)
    bulk_create = bulk_subparsers.add_parser("create", help="Create a session without running it")
    _add_job_arguments(bulk_create)
    bulk_create.set_defaults(func=_cmd_bulk_create)
    bulk_execute = bulk_subparsers.add_parser("execute", help="Execute or resume a session")
    bulk_execute.add_argument("session_id")
    bulk_execute.add_argument(
        "--mock", action="store_true", help="Use synthetic upstream responses"
    )
    bulk_execute.set_defaults(func=_cmd_bulk_execute)
    bulk_run = bulk_subparsers.add_parser("run", help="Create and execute a session")
    _add_job_arguments(bulk_run)
    bulk_run.add_argument(
        "--force", action="store_true", help="Run even when risk assessment says not to"
    )
    bulk_run.set_defaults(func=_cmd_bulk_run)

    risk_parser = subparsers.add_parser("risk", help="Assess risk for a prospective session")
    risk_parser.add_argument("work_type", choices=WORK_TYPES)
    risk_parser.add_argument("item_ids", nargs="+")
    risk_parser.set_defaults(func=_cmd_risk)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
