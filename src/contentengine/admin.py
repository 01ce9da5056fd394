from __future__ import annotations

import hmac
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .activity import activity_totals, list_activity
from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .db import DBConn
from .engine import Engine, build_engine
from .models import QueueItem
from .storage import get_state_db_path, init_db
from .utils import configure_logging, log_event

app = FastAPI(title="Content Engine API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=os.environ.get("CE_TRUSTED_PROXIES", "*"))

logger = configure_logging("contentengine.admin")


def get_conn() -> Iterator[DBConn]:
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def get_engine() -> Iterator[Engine]:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        conn.close()
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    engine = build_engine(conn, config)
    try:
        yield engine
    finally:
        engine.close()


def _require_worker_token(request: Request) -> None:
    token = os.environ.get("CE_WORKER_TOKEN")
    if not token:
        raise HTTPException(status_code=503, detail="worker token not configured")
    header = request.headers.get("X-Worker-Token") or ""
    if not hmac.compare_digest(header.encode("utf-8"), token.encode("utf-8")):
        raise HTTPException(status_code=401, detail="unauthorized")


class ManualEnqueueRequest(BaseModel):
    context_id: int
    content_type: str
    lang: str
    priority: int | None = None
    source_ref: dict | None = None
    scheduled_at: str | None = None
    allow_duplicate: bool = False


class DispatchRequest(BaseModel):
    job_type: str
    payload: dict | None = None
    priority: int = 10
    delay_seconds: int = 0


class ContextRequest(BaseModel):
    name: str
    slug: str | None = None
    type: str | None = None
    status: str | None = None
    priority: int | None = None
    daily_quota: int | None = None
    date_start: str | None = None
    date_end: str | None = None
    events: dict | None = None
    prompts_config: dict | None = None
    settings: dict | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Content Engine API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/status")
def status(engine: Engine = Depends(get_engine)) -> dict[str, object]:
    return {
        "counts": engine.store.status_counts(),
        "eligible": engine.store.count_eligible(),
        "handlers": engine.handlers.registered_types(),
        "channels": sorted(engine.channels.all()),
    }


@app.post("/planner", dependencies=[Depends(_require_worker_token)])
def run_planner(engine: Engine = Depends(get_engine)) -> dict[str, object]:
    result = engine.planner.run()
    return {"planned": result.planned, "skipped": result.skipped, "errors": result.errors}


@app.post("/worker", dependencies=[Depends(_require_worker_token)])
def run_worker(batch_size: int | None = None, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    if batch_size is not None:
        batch_size = min(max(batch_size, 1), 10)
    result = engine.worker.run(batch_size)
    return {
        "processed": result.processed,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "skipped": result.skipped,
        "deferred": result.deferred,
        "stale_released": result.stale_released,
        "stopped_reason": result.stopped_reason,
        "items": [asdict(outcome) for outcome in result.items],
    }


@app.get("/queue")
def queue_list(
    status: str | None = None,
    context_id: int | None = None,
    content_type: str | None = None,
    channel: str | None = None,
    lang: str | None = None,
    limit: int = 50,
    offset: int = 0,
    engine: Engine = Depends(get_engine),
) -> dict[str, object]:
    items = engine.store.list_items(
        status=status,
        context_id=context_id,
        content_type=content_type,
        channel=channel,
        lang=lang,
        limit=min(max(limit, 1), 200),
        offset=max(offset, 0),
    )
    return {
        "items": [_item_to_dict(item) for item in items],
        "counts": engine.store.status_counts(),
    }


@app.post("/queue", dependencies=[Depends(_require_worker_token)])
def queue_enqueue(payload: ManualEnqueueRequest, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    try:
        item_id = engine.planner.queue_manual(
            payload.context_id,
            payload.content_type,
            payload.lang,
            source_ref=payload.source_ref,
            priority=payload.priority,
            scheduled_at=payload.scheduled_at,
            allow_duplicate=payload.allow_duplicate,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": item_id}


@app.post("/jobs", dependencies=[Depends(_require_worker_token)])
def jobs_dispatch(payload: DispatchRequest, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    try:
        item_id = engine.dispatcher.dispatch(
            payload.job_type,
            payload.payload,
            priority=payload.priority,
            delay_seconds=payload.delay_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": item_id, "duplicate": item_id is None}


@app.get("/queue/{item_id}")
def queue_get(item_id: int, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    item = engine.store.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="item_not_found")
    return _item_to_dict(item)


@app.post("/queue/{item_id}/process", dependencies=[Depends(_require_worker_token)])
def queue_process(item_id: int, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    if engine.store.get(item_id) is None:
        raise HTTPException(status_code=404, detail="item_not_found")
    outcome = engine.worker.process_single(item_id)
    return asdict(outcome)


@app.post("/queue/{item_id}/retry", dependencies=[Depends(_require_worker_token)])
def queue_retry(item_id: int, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    if engine.store.get(item_id) is None:
        raise HTTPException(status_code=404, detail="item_not_found")
    if not engine.store.retry(item_id):
        raise HTTPException(status_code=409, detail="item_not_retryable")
    log_event(logger, logging.INFO, "queue_item_retried", item_id=item_id)
    return {"status": "ok"}


@app.delete("/queue/{item_id}", dependencies=[Depends(_require_worker_token)])
def queue_delete(item_id: int, engine: Engine = Depends(get_engine)) -> dict[str, str]:
    if not engine.store.delete(item_id):
        raise HTTPException(status_code=404, detail="item_not_found")
    log_event(logger, logging.INFO, "queue_item_deleted", item_id=item_id)
    return {"status": "deleted"}


@app.get("/contexts")
def contexts_list(status: str | None = None, engine: Engine = Depends(get_engine)) -> list[dict[str, object]]:
    return [asdict(context) for context in engine.contexts.list_contexts(status)]


@app.post("/contexts", dependencies=[Depends(_require_worker_token)])
def contexts_upsert(payload: ContextRequest, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    data = {key: value for key, value in payload.model_dump().items() if value is not None}
    try:
        context = engine.contexts.upsert_by_slug(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(context)


@app.get("/activity")
def activity(
    limit: int = 50, queue_item_id: int | None = None, engine: Engine = Depends(get_engine)
) -> dict[str, object]:
    return {
        "entries": list_activity(engine.conn, limit=min(max(limit, 1), 500), queue_item_id=queue_item_id),
        "totals": activity_totals(engine.conn),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_worker_token)])
def runtime_config_get(conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_worker_token)])
def runtime_config_set(payload: RuntimeConfigRequest, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


def _item_to_dict(item: QueueItem) -> dict[str, object]:
    data = asdict(item)
    data.pop("lock_token", None)
    data["locked"] = item.lock_token is not None
    return data


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("contentengine")
    except Exception:  # noqa: BLE001
        return "unknown"
