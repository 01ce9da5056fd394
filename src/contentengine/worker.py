from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from .activity import record_activity
from .channels import DISTRIBUTION_PAYLOAD_TYPE, ChannelDistributor, ChannelRegistry
from .collaborators import Generator, Notifier, Publisher, Scorer
from .config import Config
from .contexts import ContextRepository
from .handlers import HandlerRegistry
from .models import (
    PRIMARY_CHANNEL,
    QueueItem,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PERMANENT_FAILURE,
    STATUS_PUBLISHED,
    STATUS_REVIEW,
    STATUS_SKIPPED,
)
from .queue_store import QueueStore
from .results import (
    ContextUnavailableError,
    ExecutionError,
    ItemOutcome,
    JobResult,
    LockLostError,
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_LOCK_LOST,
    OUTCOME_REJECTED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
    PERMANENT,
    ReadinessResult,
    STOP_BATCH_COMPLETE,
    STOP_MAX_EXECUTION_TIME,
    STOP_NO_MORE_ITEMS,
    STOP_TIME_BUDGET,
    TRANSIENT,
    WorkerRunResult,
)
from .utils import log_event, utc_now

_RETRYABLE_MANUAL = (STATUS_FAILED, STATUS_PERMANENT_FAILURE)


class Worker:
    """Runs bounded batches over the queue.

    Readiness is cached per batch and per destination: the generator is
    asked once, each auxiliary adapter at most once. Items whose
    destination is only temporarily unavailable are handed back untouched;
    items whose destination can never work are skipped.
    """

    def __init__(
        self,
        store: QueueStore,
        contexts: ContextRepository,
        config: Config,
        handlers: HandlerRegistry,
        channels: ChannelRegistry,
        generator: Generator,
        scorer: Scorer,
        publisher: Publisher,
        notifier: Notifier | None = None,
        distributor: ChannelDistributor | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.contexts = contexts
        self.config = config
        self.handlers = handlers
        self.channels = channels
        self.generator = generator
        self.scorer = scorer
        self.publisher = publisher
        self.notifier = notifier
        self.distributor = distributor
        self.clock = clock
        self.monotonic = monotonic
        self.tz = ZoneInfo(config.app.timezone or "UTC")
        self.logger = logging.getLogger("contentengine.worker")

    def run(self, batch_size: int | None = None) -> WorkerRunResult:
        settings = self.config.worker
        started = self.monotonic()
        result = WorkerRunResult()
        result.stale_released = self.store.release_stale_locks(settings.lock_timeout_minutes)

        readiness: dict[str, ReadinessResult] = {}
        primary = self._generator_readiness(readiness)
        if not primary.ready:
            log_event(
                self.logger,
                logging.WARNING,
                "generator_not_ready",
                reason=primary.reason,
            )

        size = max(1, int(batch_size or settings.batch_size))
        deferred_ids: list[int] = []
        result.stopped_reason = STOP_BATCH_COMPLETE
        for _ in range(size):
            elapsed = self.monotonic() - started
            if elapsed >= settings.max_execution_time_seconds:
                result.stopped_reason = STOP_MAX_EXECUTION_TIME
                break
            if elapsed >= settings.time_budget_seconds:
                result.stopped_reason = STOP_TIME_BUDGET
                break
            item = self.store.lock_next_eligible(exclude_ids=deferred_ids)
            if item is None:
                result.stopped_reason = STOP_NO_MORE_ITEMS
                break
            outcome = self._process_locked(item, readiness)
            if outcome.outcome == OUTCOME_DEFERRED:
                deferred_ids.append(item.id)
            _tally(result, outcome)

        log_event(
            self.logger,
            logging.INFO,
            "worker_batch_finished",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            deferred=result.deferred,
            stale_released=result.stale_released,
            stopped_reason=result.stopped_reason,
        )
        return result

    def run_loop(
        self,
        sleep_seconds: int,
        batch_size: int | None = None,
        max_batches: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        batches = 0
        while True:
            self.run(batch_size)
            batches += 1
            if max_batches is not None and batches >= max_batches:
                return batches
            sleep(max(sleep_seconds, 1))

    def process_single(self, item_id: int) -> ItemOutcome:
        item = self.store.get(item_id)
        if item is None:
            return ItemOutcome(item_id, OUTCOME_REJECTED, message="not_found")
        if item.status == STATUS_SKIPPED:
            return ItemOutcome(item_id, OUTCOME_REJECTED, item.status, "item was skipped")
        if item.status not in (STATUS_PENDING,) + _RETRYABLE_MANUAL:
            return ItemOutcome(item_id, OUTCOME_REJECTED, item.status, f"item is {item.status}")
        if item.lock_token:
            return ItemOutcome(item_id, OUTCOME_REJECTED, item.status, "item is locked")

        readiness = self.check_readiness(item, {})
        if readiness.state == TRANSIENT:
            return ItemOutcome(item_id, OUTCOME_DEFERRED, item.status, readiness.reason)

        if item.status in _RETRYABLE_MANUAL and not self.store.retry(item_id):
            return ItemOutcome(item_id, OUTCOME_REJECTED, item.status, "could not reset item")
        token = self.store.try_lock_by_id(item_id)
        if token is None:
            return ItemOutcome(item_id, OUTCOME_REJECTED, item.status, "could not acquire lock")
        locked = self.store.get(item_id)
        if locked is None or locked.lock_token != token:
            log_event(self.logger, logging.WARNING, "worker_lock_lost", item_id=item_id)
            return ItemOutcome(item_id, OUTCOME_LOCK_LOST, message="lock changed after acquisition")

        if readiness.state == PERMANENT:
            return self._skip(locked, token, readiness.reason)
        log_event(self.logger, logging.INFO, "worker_manual_run", item_id=item_id)
        return self._execute(locked, token)

    def check_readiness(
        self, item: QueueItem, cache: dict[str, ReadinessResult]
    ) -> ReadinessResult:
        if self.handlers.has(item.content_type):
            return ReadinessResult.ok()
        if item.is_primary_channel:
            return self._generator_readiness(cache)
        if item.channel in cache:
            return cache[item.channel]
        cache[item.channel] = self._adapter_readiness(item.channel)
        return cache[item.channel]

    def _generator_readiness(self, cache: dict[str, ReadinessResult]) -> ReadinessResult:
        if PRIMARY_CHANNEL in cache:
            return cache[PRIMARY_CHANNEL]
        try:
            report = self.generator.check_readiness()
        except Exception as exc:  # noqa: BLE001
            readiness = ReadinessResult.transient(f"generator readiness check failed: {exc}")
        else:
            if report.ready:
                readiness = ReadinessResult.ok()
            else:
                readiness = ReadinessResult.transient(
                    "; ".join(report.errors) or "generator not ready"
                )
        cache[PRIMARY_CHANNEL] = readiness
        return readiness

    def _adapter_readiness(self, channel_id: str) -> ReadinessResult:
        adapter = self.channels.get(channel_id)
        if adapter is None:
            return ReadinessResult.permanent(f"no adapter registered for channel {channel_id}")
        try:
            if not adapter.is_enabled():
                return ReadinessResult.permanent(f"channel {channel_id} is disabled")
            validation = adapter.validate_configuration()
        except Exception as exc:  # noqa: BLE001
            return ReadinessResult.transient(f"channel {channel_id} check failed: {exc}")
        if not validation.valid:
            return ReadinessResult.permanent(
                f"channel {channel_id} misconfigured: {validation.message}"
            )
        return ReadinessResult.ok()

    def _process_locked(
        self, item: QueueItem, readiness: dict[str, ReadinessResult]
    ) -> ItemOutcome:
        token = item.lock_token or ""
        state = self.check_readiness(item, readiness)
        if state.state == TRANSIENT:
            self.store.release_lock(item.id, token)
            log_event(
                self.logger,
                logging.INFO,
                "worker_item_deferred",
                item_id=item.id,
                channel=item.channel,
                reason=state.reason,
            )
            return ItemOutcome(item.id, OUTCOME_DEFERRED, message=state.reason)
        if state.state == PERMANENT:
            return self._skip(item, token, state.reason)
        return self._execute(item, token)

    def _skip(self, item: QueueItem, token: str, reason: str) -> ItemOutcome:
        if not self.store.mark_skipped(item.id, token, reason):
            return ItemOutcome(item.id, OUTCOME_LOCK_LOST, message="lock lost while skipping")
        log_event(
            self.logger,
            logging.WARNING,
            "worker_item_skipped",
            item_id=item.id,
            channel=item.channel,
            reason=reason,
        )
        self._record("item_skipped", item, reason, level="warning")
        return ItemOutcome(item.id, OUTCOME_SKIPPED, STATUS_SKIPPED, reason)

    def _execute(self, item: QueueItem, token: str) -> ItemOutcome:
        started = self.monotonic()
        try:
            if self.handlers.has(item.content_type):
                outcome = self._run_handler(item, token)
            elif not item.is_primary_channel:
                outcome = self._run_channel(item, token)
            else:
                outcome = self._run_generation(item, token)
        except LockLostError as exc:
            log_event(self.logger, logging.WARNING, "worker_lock_lost", item_id=item.id, action=exc.action)
            return ItemOutcome(item.id, OUTCOME_LOCK_LOST, message=str(exc))
        except Exception as exc:  # noqa: BLE001
            outcome = self._fail(item, token, str(exc) or exc.__class__.__name__)
        duration_ms = int((self.monotonic() - started) * 1000)
        return ItemOutcome(
            outcome.item_id,
            outcome.outcome,
            outcome.status,
            outcome.message,
            duration_ms,
        )

    def _fail(
        self,
        item: QueueItem,
        token: str,
        error: str,
        max_attempts: int | None = None,
        retry_delay_seconds: int | None = None,
    ) -> ItemOutcome:
        status = self.store.mark_failed(
            item.id,
            token,
            error,
            max_attempts=max_attempts,
            retry_delay_seconds=retry_delay_seconds,
        )
        if status is None:
            return ItemOutcome(item.id, OUTCOME_LOCK_LOST, message="lock lost while failing")
        log_event(
            self.logger,
            logging.ERROR,
            "worker_item_failed",
            item_id=item.id,
            context_id=item.context_id,
            content_type=item.content_type,
            channel=item.channel,
            status=status,
            error=error,
        )
        self._record("item_failed", item, error, level="error", data={"status": status})
        return ItemOutcome(item.id, OUTCOME_FAILED, status, error)

    def _run_handler(self, item: QueueItem, token: str) -> ItemOutcome:
        if not self.store.mark_processing(item.id, token):
            raise LockLostError(item.id, "mark_processing")
        handler = self.handlers.get(item.content_type)
        if handler is None:
            raise ExecutionError(f"handler for {item.content_type} disappeared")
        payload = item.source_ref
        if not handler.can_handle(payload):
            result = JobResult.permanent_failure(
                f"payload missing required keys: {', '.join(handler.required_keys)}"
            )
        else:
            try:
                result = handler.handle(payload, item.id, item.attempts + 1)
            except Exception as exc:  # noqa: BLE001
                result = JobResult.failure(str(exc) or exc.__class__.__name__)

        if result.ok:
            if not self.store.mark_completed(item.id, token, STATUS_DONE, result=result.data):
                raise LockLostError(item.id, "mark_completed")
            log_event(self.logger, logging.INFO, "worker_job_done", item_id=item.id, job_type=item.content_type)
            self._record("job_completed", item, "", data=result.data)
            return ItemOutcome(item.id, OUTCOME_SUCCEEDED, STATUS_DONE)
        error = result.error or "handler failed"
        if result.retryable:
            return self._fail(
                item,
                token,
                error,
                max_attempts=result.max_attempts or handler.max_attempts,
                retry_delay_seconds=result.retry_delay_seconds,
            )
        if not self.store.mark_permanent_failure(item.id, token, error):
            raise LockLostError(item.id, "mark_permanent_failure")
        log_event(self.logger, logging.ERROR, "worker_job_permanent_failure", item_id=item.id, error=error)
        self._record("job_permanent_failure", item, error, level="error")
        return ItemOutcome(item.id, OUTCOME_FAILED, STATUS_PERMANENT_FAILURE, error)

    def _run_channel(self, item: QueueItem, token: str) -> ItemOutcome:
        if not self.store.mark_generating(item.id, token):
            raise LockLostError(item.id, "mark_generating")
        adapter = self.channels.get(item.channel)
        if adapter is None or not adapter.is_enabled():
            raise ExecutionError(f"channel {item.channel} is unavailable")
        validation = adapter.validate_configuration()
        if not validation.valid:
            raise ExecutionError(f"channel {item.channel} misconfigured: {validation.message}")

        payload = item.source_ref
        snapshot = payload.get("content_snapshot")
        if payload.get("type") != DISTRIBUTION_PAYLOAD_TYPE or not isinstance(snapshot, dict):
            return self._reject_payload(item, token, "source_ref is not a channel distribution payload")
        if not str(snapshot.get("title") or "").strip():
            return self._reject_payload(item, token, "content snapshot has no title")

        context = self.contexts.get(item.context_id) if item.context_id else None
        published = adapter.publish(snapshot, item, context)
        if not published.success:
            raise ExecutionError(published.message or f"channel {item.channel} publish failed")
        parent = payload.get("parent_post_id")
        if not self.store.mark_channel_completed(
            item.id,
            token,
            external_id=published.external_id,
            parent_post_id=str(parent) if parent is not None else None,
        ):
            raise LockLostError(item.id, "mark_channel_completed")
        log_event(
            self.logger,
            logging.INFO,
            "worker_channel_published",
            item_id=item.id,
            channel=item.channel,
            external_id=published.external_id,
        )
        self._record("channel_published", item, published.message, data={"external_id": published.external_id})
        return ItemOutcome(item.id, OUTCOME_SUCCEEDED, STATUS_PUBLISHED)

    def _reject_payload(self, item: QueueItem, token: str, error: str) -> ItemOutcome:
        if not self.store.mark_permanent_failure(item.id, token, error):
            raise LockLostError(item.id, "mark_permanent_failure")
        log_event(self.logger, logging.ERROR, "worker_payload_rejected", item_id=item.id, error=error)
        self._record("payload_rejected", item, error, level="error")
        return ItemOutcome(item.id, OUTCOME_FAILED, STATUS_PERMANENT_FAILURE, error)

    def _run_generation(self, item: QueueItem, token: str) -> ItemOutcome:
        if not self.store.mark_generating(item.id, token):
            raise LockLostError(item.id, "mark_generating")
        context = self.contexts.get(item.context_id)
        if context is None:
            raise ContextUnavailableError(f"context {item.context_id} not found")
        today = self.clock().astimezone(self.tz).date()
        if not context.is_active(today):
            raise ContextUnavailableError(f"context {context.slug} is not active")

        generation = self.generator.generate(item, context)
        if not generation.success:
            raise ExecutionError(generation.error or "generation failed")

        quality = self.scorer.passes_quality(generation.content)
        content = {**generation.content, "quality_score": quality.score}
        if not quality.passes:
            self._record(
                "quality_low",
                item,
                f"quality score {quality.score} below threshold",
                level="warning",
                data={"breakdown": quality.breakdown},
            )

        publishing = self.config.publishing
        auto = publishing.auto_publish and quality.score >= publishing.min_auto_publish_score
        status = STATUS_PUBLISHED if auto else STATUS_REVIEW

        result_id = self.publisher.publish(content, item, context, status)
        if not result_id:
            raise ExecutionError("publisher returned no result id")

        stats = generation.stats
        if not self.store.mark_completed(
            item.id,
            token,
            status,
            post_id=str(result_id),
            tokens_used=stats.tokens,
            cost=stats.cost,
            result={"quality_score": quality.score, "breakdown": quality.breakdown},
        ):
            raise LockLostError(item.id, "mark_completed")
        log_event(
            self.logger,
            logging.INFO,
            "worker_content_generated",
            item_id=item.id,
            context=context.slug,
            content_type=item.content_type,
            lang=item.lang,
            status=status,
            result_id=result_id,
            score=quality.score,
            tokens=stats.tokens,
        )
        self._record(
            "content_generated",
            item,
            str(content.get("title") or ""),
            tokens_used=stats.tokens,
            cost=stats.cost,
            duration_ms=stats.duration_ms,
            data={"status": status, "result_id": result_id, "score": quality.score},
        )

        if status == STATUS_REVIEW and self.notifier is not None:
            try:
                self.notifier.notify_review(item, context, str(result_id), quality.score)
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.WARNING, "review_notify_failed", item_id=item.id, error=str(exc))
        if status == STATUS_PUBLISHED and self.distributor is not None:
            try:
                self.distributor.distribute(
                    item, content, str(result_id), self.publisher.permalink(str(result_id))
                )
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "channel_distribution_failed", item_id=item.id, error=str(exc))
        return ItemOutcome(item.id, OUTCOME_SUCCEEDED, status)

    def _record(
        self,
        action: str,
        item: QueueItem,
        message: str,
        level: str = "info",
        tokens_used: int = 0,
        cost: float = 0.0,
        duration_ms: int = 0,
        data: dict[str, Any] | None = None,
    ) -> None:
        try:
            record_activity(
                self.store.conn,
                action,
                message=message,
                level=level,
                queue_item_id=item.id,
                context_id=item.context_id or None,
                tokens_used=tokens_used,
                cost=cost,
                duration_ms=duration_ms,
                data=data,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "activity_record_failed", action=action, error=str(exc))


def _tally(result: WorkerRunResult, outcome: ItemOutcome) -> None:
    result.items.append(outcome)
    if outcome.outcome == OUTCOME_DEFERRED:
        result.deferred += 1
        return
    if outcome.outcome == OUTCOME_SKIPPED:
        result.skipped += 1
        return
    result.processed += 1
    if outcome.outcome == OUTCOME_SUCCEEDED:
        result.succeeded += 1
    else:
        result.failed += 1
