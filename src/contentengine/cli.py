from __future__ import annotations

import argparse
import functools
import logging
import os
from typing import Callable

import uvicorn

from .activity import activity_totals
from .config import ConfigError, load_config_file, set_runtime_config
from .engine import Engine, open_engine
from .utils import log_event


def _setup_logging() -> logging.Logger:
    level_name = os.environ.get("CE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    return logging.getLogger("contentengine")


def _open(args: argparse.Namespace, logger: logging.Logger) -> Engine | None:
    try:
        return open_engine(args.db)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


Command = Callable[[argparse.Namespace, logging.Logger, Engine], int]


def _with_engine(command: Command) -> Callable[[argparse.Namespace, logging.Logger], int]:
    """Open the engine for one command and always close it afterwards."""

    @functools.wraps(command)
    def run(args: argparse.Namespace, logger: logging.Logger) -> int:
        engine = _open(args, logger)
        if engine is None:
            return 1
        try:
            return command(args, logger, engine)
        finally:
            engine.close()

    return run


@_with_engine
def _cmd_plan(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    result = engine.planner.run()
    log_event(
        logger,
        logging.INFO,
        "plan_complete",
        planned=result.planned,
        skipped=result.skipped,
        errors=len(result.errors),
    )
    return 1 if result.errors else 0


@_with_engine
def _cmd_work(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    if args.loop:
        engine.worker.run_loop(args.sleep, batch_size=args.batch_size)
        return 0
    result = engine.worker.run(args.batch_size)
    log_event(
        logger,
        logging.INFO,
        "work_complete",
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped,
        deferred=result.deferred,
        stopped_reason=result.stopped_reason,
    )
    return 0


@_with_engine
def _cmd_process(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    outcome = engine.worker.process_single(args.item_id)
    log_event(
        logger,
        logging.INFO,
        "process_complete",
        item_id=outcome.item_id,
        outcome=outcome.outcome,
        status=outcome.status,
        message=outcome.message,
    )
    return 0 if outcome.outcome == "succeeded" else 1


@_with_engine
def _cmd_enqueue(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    try:
        item_id = engine.planner.queue_manual(
            args.context_id,
            args.content_type,
            args.lang,
            priority=args.priority,
            allow_duplicate=args.allow_duplicate,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "enqueue_failed", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "enqueued", item_id=item_id)
    return 0


@_with_engine
def _cmd_jobs_dispatch(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    try:
        if args.job_type == "queue_cleanup" and not args.payload:
            item_id = engine.dispatch_cleanup()
        else:
            item_id = engine.dispatcher.dispatch(
                args.job_type,
                dict(_parse_pairs(args.payload)),
                priority=args.priority,
                delay_seconds=args.delay,
            )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "dispatch_failed", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "job_dispatched", item_id=item_id, duplicate=item_id is None)
    return 0


@_with_engine
def _cmd_queue_list(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    items = engine.store.list_items(status=args.status, context_id=args.context_id, limit=args.limit)
    for item in items:
        log_event(
            logger,
            logging.INFO,
            "queue_item",
            item_id=item.id,
            context_id=item.context_id,
            content_type=item.content_type,
            lang=item.lang,
            channel=item.channel,
            status=item.status,
            priority=item.priority,
            scheduled_at=item.scheduled_at,
            attempts=item.attempts,
            last_error=item.last_error,
        )
    log_event(logger, logging.INFO, "queue_listed", count=len(items))
    return 0


@_with_engine
def _cmd_queue_counts(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    log_event(
        logger,
        logging.INFO,
        "queue_counts",
        eligible=engine.store.count_eligible(),
        **engine.store.status_counts(),
    )
    log_event(logger, logging.INFO, "activity_totals", **activity_totals(engine.conn))
    return 0


@_with_engine
def _cmd_queue_retry(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    if not engine.store.retry(args.item_id):
        log_event(logger, logging.ERROR, "retry_refused", item_id=args.item_id)
        return 1
    log_event(logger, logging.INFO, "retry_queued", item_id=args.item_id)
    return 0


@_with_engine
def _cmd_queue_purge(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    retention = engine.config.retention
    if args.failed:
        deleted = engine.store.delete_failed()
    else:
        deleted = engine.store.purge_old(retention.done_days, retention.failed_days)
    log_event(logger, logging.INFO, "queue_purged", deleted=deleted)
    return 0


@_with_engine
def _cmd_contexts_list(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    contexts = engine.contexts.list_contexts(args.status)
    for context in contexts:
        log_event(
            logger,
            logging.INFO,
            "context",
            context_id=context.id,
            slug=context.slug,
            type=context.type,
            status=context.status,
            date_start=context.date_start,
            date_end=context.date_end,
            events=len(context.event_list),
            venues=len(context.venues),
        )
    log_event(logger, logging.INFO, "contexts_listed", count=len(contexts))
    return 0


def _cmd_contexts_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        data = load_config_file(args.path)
    except (OSError, ConfigError) as exc:
        log_event(logger, logging.ERROR, "contexts_file_error", path=args.path, error=str(exc))
        return 1
    entries = data.get("contexts")
    if not isinstance(entries, list):
        log_event(logger, logging.ERROR, "contexts_file_error", path=args.path, error="contexts must be a list")
        return 1

    for entry in entries:
        if not isinstance(entry, dict):
            log_event(logger, logging.ERROR, "context_invalid", entry=str(entry))
            return 1
    return _import_contexts(args, logger, entries)


def _import_contexts(args: argparse.Namespace, logger: logging.Logger, entries: list[dict]) -> int:
    engine = _open(args, logger)
    if engine is None:
        return 1
    imported = 0
    try:
        for entry in entries:
            try:
                context = engine.contexts.upsert_by_slug(entry)
            except (KeyError, ValueError) as exc:
                log_event(logger, logging.ERROR, "context_invalid", entry=entry.get("name"), error=str(exc))
                return 1
            log_event(logger, logging.INFO, "context_imported", context_id=context.id, slug=context.slug)
            imported += 1
    finally:
        engine.close()
    log_event(logger, logging.INFO, "contexts_imported", count=imported)
    return 0


@_with_engine
def _cmd_config_apply(args: argparse.Namespace, logger: logging.Logger, engine: Engine) -> int:
    try:
        set_runtime_config(engine.conn, load_config_file(args.path))
    except (OSError, ConfigError) as exc:
        log_event(logger, logging.ERROR, "config_error", path=args.path, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_applied", path=args.path)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("contentengine.admin:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def _parse_pairs(values: list[str] | None) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for value in values or []:
        if "=" not in value:
            raise ValueError(f"expected key=value, got {value}")
        key, raw = value.split("=", 1)
        pairs.append((key.strip(), raw.strip()))
    return pairs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contentengine", description="Content Engine CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $CE_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Plan due content for all active contexts")
    plan_parser.set_defaults(func=_cmd_plan)

    work_parser = subparsers.add_parser("work", help="Run a worker batch")
    work_parser.add_argument("--batch-size", type=int, default=None, help="Items per batch")
    work_parser.add_argument("--loop", action="store_true", help="Keep running batches")
    work_parser.add_argument("--sleep", type=int, default=60, help="Seconds between batches")
    work_parser.set_defaults(func=_cmd_work)

    process_parser = subparsers.add_parser("process", help="Process one queue item now")
    process_parser.add_argument("item_id", type=int, help="Queue item id")
    process_parser.set_defaults(func=_cmd_process)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue content manually")
    enqueue_parser.add_argument("context_id", type=int, help="Context id")
    enqueue_parser.add_argument("content_type", help="Content type")
    enqueue_parser.add_argument("lang", help="Language code")
    enqueue_parser.add_argument("--priority", type=int, default=None, help="Queue priority")
    enqueue_parser.add_argument(
        "--allow-duplicate",
        action="store_true",
        help="Queue even if the same content is already queued",
    )
    enqueue_parser.set_defaults(func=_cmd_enqueue)

    jobs_parser = subparsers.add_parser("jobs", help="Generic job commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_dispatch = jobs_subparsers.add_parser("dispatch", help="Dispatch a registered job")
    jobs_dispatch.add_argument("job_type", help="Registered job type")
    jobs_dispatch.add_argument("--payload", nargs="*", help="Payload entries as key=value")
    jobs_dispatch.add_argument("--priority", type=int, default=10, help="Queue priority")
    jobs_dispatch.add_argument("--delay", type=int, default=0, help="Delay in seconds")
    jobs_dispatch.set_defaults(func=_cmd_jobs_dispatch)

    queue_parser = subparsers.add_parser("queue", help="Inspect and maintain the queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)

    queue_list = queue_subparsers.add_parser("list", help="List queue items")
    queue_list.add_argument("--status", default=None, help="Filter by status")
    queue_list.add_argument("--context-id", type=int, default=None, help="Filter by context")
    queue_list.add_argument("--limit", type=int, default=20, help="Number of items to show")
    queue_list.set_defaults(func=_cmd_queue_list)

    queue_counts = queue_subparsers.add_parser("counts", help="Show status counts")
    queue_counts.set_defaults(func=_cmd_queue_counts)

    queue_retry = queue_subparsers.add_parser("retry", help="Reset a failed item")
    queue_retry.add_argument("item_id", type=int, help="Queue item id")
    queue_retry.set_defaults(func=_cmd_queue_retry)

    queue_purge = queue_subparsers.add_parser("purge", help="Delete old finished items")
    queue_purge.add_argument("--failed", action="store_true", help="Delete all failed items instead")
    queue_purge.set_defaults(func=_cmd_queue_purge)

    contexts_parser = subparsers.add_parser("contexts", help="Manage contexts")
    contexts_subparsers = contexts_parser.add_subparsers(dest="contexts_command", required=True)

    contexts_list = contexts_subparsers.add_parser("list", help="List contexts")
    contexts_list.add_argument("--status", default=None, help="Filter by status")
    contexts_list.set_defaults(func=_cmd_contexts_list)

    contexts_import = contexts_subparsers.add_parser("import", help="Import contexts from YAML")
    contexts_import.add_argument("path", help="Path to contexts YAML file")
    contexts_import.set_defaults(func=_cmd_contexts_import)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_apply = config_subparsers.add_parser("apply", help="Replace runtime config from YAML")
    config_apply.add_argument("path", help="Path to config YAML file")
    config_apply.set_defaults(func=_cmd_config_apply)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8001, help="Bind port")
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)
