from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .activity import purge_activity
from .models import NewQueueItem, PRIMARY_CHANNEL
from .queue_store import QueueStore
from .results import JobResult
from .utils import isoformat_utc, log_event, stable_hash, utc_now

# Reserved for the primary generation pipeline; never routed to a handler.
CONTENT_GENERATION = "content_generation"


class JobHandler:
    """Executes one generic (non-channel) job type.

    Subclasses set ``job_type`` and implement :meth:`handle`. Returning
    ``JobResult.failure`` lets the worker retry with the handler's own
    ceiling and delay; ``JobResult.permanent_failure`` stops retries.
    """

    job_type: str = ""
    max_attempts: int = 3
    required_keys: tuple[str, ...] = ()

    def can_handle(self, payload: dict[str, Any]) -> bool:
        return all(key in payload for key in self.required_keys)

    def handle(self, payload: dict[str, Any], item_id: int, attempt: int) -> JobResult:
        raise NotImplementedError


HandlerFactory = Callable[[], JobHandler]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._factories: dict[str, HandlerFactory] = {}
        self.logger = logging.getLogger("contentengine.handlers")

    def register(self, handler: JobHandler) -> None:
        job_type = handler.job_type
        if not job_type:
            raise ValueError("handler job_type is required")
        if job_type == CONTENT_GENERATION:
            raise ValueError(f"{CONTENT_GENERATION} is reserved for the generation pipeline")
        self._handlers[job_type] = handler
        self._factories.pop(job_type, None)
        log_event(self.logger, logging.DEBUG, "handler_registered", job_type=job_type)

    def register_factory(self, job_type: str, factory: HandlerFactory) -> None:
        if job_type == CONTENT_GENERATION:
            raise ValueError(f"{CONTENT_GENERATION} is reserved for the generation pipeline")
        self._factories[job_type] = factory
        self._handlers.pop(job_type, None)

    def has(self, job_type: str) -> bool:
        return job_type in self._handlers or job_type in self._factories

    def get(self, job_type: str) -> JobHandler | None:
        handler = self._handlers.get(job_type)
        if handler is not None:
            return handler
        factory = self._factories.pop(job_type, None)
        if factory is None:
            return None
        handler = factory()
        if handler.job_type != job_type:
            raise ValueError(
                f"factory for {job_type} produced a handler for {handler.job_type}"
            )
        self._handlers[job_type] = handler
        return handler

    def unregister(self, job_type: str) -> bool:
        removed = self._handlers.pop(job_type, None) is not None
        removed = self._factories.pop(job_type, None) is not None or removed
        return removed

    def registered_types(self) -> list[str]:
        return sorted(set(self._handlers) | set(self._factories))


class QueueDispatcher:
    """Enqueues generic jobs with a payload-derived idempotence key."""

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.logger = logging.getLogger("contentengine.dispatch")

    def dispatch(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 10,
        delay_seconds: int = 0,
        context_id: int = 0,
        lang: str = "",
    ) -> int | None:
        payload = dict(payload or {})
        if not self.registry.has(job_type):
            raise ValueError(f"no handler registered for {job_type}")
        handler = self.registry.get(job_type)
        if handler is not None and not handler.can_handle(payload):
            missing = [key for key in handler.required_keys if key not in payload]
            raise ValueError(f"payload for {job_type} is missing: {', '.join(missing)}")
        unique_key = f"{context_id}|{job_type}|{lang}|{stable_hash(payload)}"
        scheduled_at = self.clock() + timedelta(seconds=max(delay_seconds, 0))
        item_id = self.store.insert(
            NewQueueItem(
                context_id=context_id,
                content_type=job_type,
                lang=lang,
                unique_key=unique_key,
                scheduled_at=isoformat_utc(scheduled_at),
                source_ref=payload,
                channel=PRIMARY_CHANNEL,
                priority=priority,
            )
        )
        if item_id is None:
            log_event(
                self.logger,
                logging.INFO,
                "job_dispatch_duplicate",
                job_type=job_type,
                unique_key=unique_key,
            )
            return None
        log_event(self.logger, logging.INFO, "job_dispatched", job_type=job_type, item_id=item_id)
        return item_id

    def dispatch_batch(self, jobs: list[dict[str, Any]]) -> list[int | None]:
        results: list[int | None] = []
        for job in jobs:
            results.append(
                self.dispatch(
                    str(job["job_type"]),
                    job.get("payload"),
                    priority=int(job.get("priority", 10)),
                    delay_seconds=int(job.get("delay_seconds", 0)),
                    context_id=int(job.get("context_id", 0)),
                    lang=str(job.get("lang", "")),
                )
            )
        return results


class QueueCleanupHandler(JobHandler):
    """Purges finished items past their retention window."""

    job_type = "queue_cleanup"
    max_attempts = 2

    def __init__(self, store: QueueStore, done_days: int, failed_days: int) -> None:
        self.store = store
        self.done_days = done_days
        self.failed_days = failed_days

    def handle(self, payload: dict[str, Any], item_id: int, attempt: int) -> JobResult:
        done_days = int(payload.get("done_days", self.done_days))
        failed_days = int(payload.get("failed_days", self.failed_days))
        if done_days < 1 or failed_days < 1:
            return JobResult.permanent_failure("retention windows must be at least one day")
        deleted = self.store.purge_old(done_days=done_days, failed_days=failed_days)
        activity_deleted = purge_activity(self.store.conn, days=failed_days)
        return JobResult.success({"deleted": deleted, "activity_deleted": activity_deleted})
