from __future__ import annotations

from datetime import timedelta

from conftest import (
    FakeAdapter,
    FakeGenerator,
    FakeMonotonic,
    FakeNotifier,
    FakePublisher,
    FakeScorer,
    make_config,
)

from contentengine.activity import list_activity
from contentengine.channels import DISTRIBUTION_PAYLOAD_TYPE, ChannelDistributor
from contentengine.handlers import HandlerRegistry, JobHandler
from contentengine.models import NewQueueItem
from contentengine.results import JobResult
from contentengine.utils import isoformat_utc
from contentengine.worker import Worker


class _Echo(JobHandler):
    job_type = "echo"
    required_keys = ("message",)

    def __init__(self, result: JobResult | None = None) -> None:
        self.result = result
        self.calls: list[tuple[int, int]] = []

    def handle(self, payload, item_id, attempt):
        self.calls.append((item_id, attempt))
        if self.result is not None:
            return self.result
        return JobResult.success({"echo": payload["message"]})


def _build(store, contexts, channels, clock, handlers=None, generator=None, publishing=None, monotonic=None, **worker):
    config = make_config(publishing=publishing or {}, worker=worker)
    generator = generator or FakeGenerator()
    publisher = FakePublisher()
    notifier = FakeNotifier()
    handlers = handlers or HandlerRegistry()
    instance = Worker(
        store,
        contexts,
        config,
        handlers,
        channels,
        generator=generator,
        scorer=FakeScorer(90),
        publisher=publisher,
        notifier=notifier,
        distributor=ChannelDistributor(store, channels, clock=clock),
        clock=clock,
        monotonic=monotonic or FakeMonotonic(),
    )
    return instance, generator, publisher, notifier


def _context(contexts):
    return contexts.create({"name": "Paris Games", "type": "evergreen"})


def _enqueue(store, context_id, key, content_type="destination_guide", channel="site", source_ref=None, priority=5):
    item_id = store.insert(
        NewQueueItem(
            context_id=context_id,
            content_type=content_type,
            lang="en",
            unique_key=key,
            scheduled_at=isoformat_utc(store.clock() - timedelta(minutes=1)),
            source_ref=source_ref or {},
            channel=channel,
            priority=priority,
        )
    )
    assert item_id is not None
    return item_id


def _channel_payload(title="Guide"):
    return {
        "type": DISTRIBUTION_PAYLOAD_TYPE,
        "parent_post_id": "en/post-1",
        "content_snapshot": {"title": title, "excerpt": "", "permalink": "https://example.test/"},
    }


def test_batch_stops_when_queue_is_empty(store, contexts, channels, clock):
    context = _context(contexts)
    _enqueue(store, context.id, "a")
    _enqueue(store, context.id, "b")
    worker, generator, publisher, _ = _build(store, contexts, channels, clock)

    result = worker.run(batch_size=3)

    assert result.processed == 2
    assert result.succeeded == 2
    assert result.stopped_reason == "no_more_items"
    assert len(publisher.published) == 2
    assert generator.readiness_calls == 1


def test_full_batch_reports_batch_complete(store, contexts, channels, clock):
    context = _context(contexts)
    for index in range(3):
        _enqueue(store, context.id, f"item-{index}")
    worker, *_ = _build(store, contexts, channels, clock)

    result = worker.run(batch_size=2)

    assert result.processed == 2
    assert result.stopped_reason == "batch_complete"
    assert store.count_eligible() == 1


def test_run_loop_drains_queue_across_batches(store, contexts, channels, clock):
    context = _context(contexts)
    for index in range(3):
        _enqueue(store, context.id, f"loop-{index}")
    worker, _, publisher, _ = _build(store, contexts, channels, clock)
    sleeps = []

    batches = worker.run_loop(0, batch_size=2, max_batches=2, sleep=sleeps.append)

    assert batches == 2
    assert sleeps == [1]
    assert len(publisher.published) == 3
    assert store.count_eligible() == 0
    assert all(item.is_terminal for item in store.list_items())


def test_generation_without_auto_publish_goes_to_review(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "review")
    channels.register(FakeAdapter("social"))
    worker, _, publisher, notifier = _build(store, contexts, channels, clock)

    worker.run()

    item = store.get(item_id)
    assert item.status == "review"
    assert item.post_id == f"en/post-{item_id}"
    assert item.tokens_used == 120
    assert item.result["quality_score"] == 90
    assert publisher.published == [(item_id, "review")]
    assert notifier.notified == [item_id]
    assert store.list_items(channel="social") == []


def test_auto_publish_distributes_to_enabled_channels(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "paris|destination_guide|en|paris")
    channels.register(FakeAdapter("social", delay_minutes=10))
    channels.register(FakeAdapter("off", enabled=False))
    worker, _, _, notifier = _build(
        store,
        contexts,
        channels,
        clock,
        publishing={"auto_publish": True, "min_auto_publish_score": 75},
    )

    worker.run()

    assert store.get(item_id).status == "published"
    assert notifier.notified == []
    (child,) = store.list_items(channel="social")
    assert child.unique_key == "paris|destination_guide|en|paris|social"
    assert child.source_ref["content_snapshot"]["permalink"] == f"https://example.test/en/post-{item_id}/"
    assert child.scheduled_at == isoformat_utc(clock() + timedelta(minutes=10))
    assert store.list_items(channel="off") == []


def test_generator_not_ready_defers_primary_items(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "deferred")
    worker, generator, _, _ = _build(store, contexts, channels, clock, generator=FakeGenerator(ready=False))

    result = worker.run(batch_size=3)

    assert result.deferred == 1
    assert result.processed == 0
    assert result.stopped_reason == "no_more_items"
    item = store.get(item_id)
    assert item.status == "pending"
    assert item.lock_token is None
    assert item.attempts == 0
    assert generator.generated == []
    assert generator.readiness_calls == 1


def test_handlers_run_while_generator_is_down(store, contexts, channels, clock):
    handlers = HandlerRegistry()
    echo = _Echo()
    handlers.register(echo)
    context = _context(contexts)
    primary = _enqueue(store, context.id, "primary", priority=9)
    job = _enqueue(store, 0, "job", content_type="echo", source_ref={"message": "hi"}, priority=1)
    worker, *_ = _build(
        store, contexts, channels, clock, handlers=handlers, generator=FakeGenerator(ready=False)
    )

    result = worker.run(batch_size=3)

    assert result.deferred == 1
    assert result.succeeded == 1
    assert store.get(primary).status == "pending"
    done = store.get(job)
    assert done.status == "done"
    assert done.result == {"echo": "hi"}
    assert echo.calls == [(job, 1)]


def test_missing_adapter_skips_item(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "orphan", channel="mastodon", source_ref=_channel_payload())
    worker, *_ = _build(store, contexts, channels, clock)

    result = worker.run()

    assert result.skipped == 1
    assert result.processed == 0
    item = store.get(item_id)
    assert item.status == "skipped"
    assert "mastodon" in item.last_error
    assert store.lock_next_eligible() is None


def test_disabled_or_invalid_adapter_skips_item(store, contexts, channels, clock):
    context = _context(contexts)
    channels.register(FakeAdapter("social", valid=False))
    item_id = _enqueue(store, context.id, "invalid", channel="social", source_ref=_channel_payload())
    worker, *_ = _build(store, contexts, channels, clock)

    worker.run()

    item = store.get(item_id)
    assert item.status == "skipped"
    assert "missing token" in item.last_error


def test_channel_item_publishes(store, contexts, channels, clock):
    context = _context(contexts)
    adapter = FakeAdapter("social")
    channels.register(adapter)
    item_id = _enqueue(store, context.id, "social", channel="social", source_ref=_channel_payload())
    worker, *_ = _build(store, contexts, channels, clock)

    result = worker.run()

    assert result.succeeded == 1
    item = store.get(item_id)
    assert item.status == "published"
    assert item.external_id == f"ext-{item_id}"
    assert item.parent_post_id == "en/post-1"
    assert adapter.published[0]["title"] == "Guide"


def test_channel_payload_without_title_is_permanent(store, contexts, channels, clock):
    context = _context(contexts)
    channels.register(FakeAdapter("social"))
    untitled = _enqueue(store, context.id, "untitled", channel="social", source_ref=_channel_payload(title=" "))
    wrong = _enqueue(store, context.id, "wrong", channel="social", source_ref={"type": "other"})
    worker, *_ = _build(store, contexts, channels, clock)

    worker.run()

    assert store.get(untitled).status == "permanent_failure"
    assert store.get(wrong).status == "permanent_failure"


def test_failed_channel_publish_is_retried(store, contexts, channels, clock):
    context = _context(contexts)
    channels.register(FakeAdapter("social", success=False))
    item_id = _enqueue(store, context.id, "flaky", channel="social", source_ref=_channel_payload())
    worker, *_ = _build(store, contexts, channels, clock)

    result = worker.run()

    assert result.failed == 1
    item = store.get(item_id)
    assert item.status == "failed"
    assert item.last_error == "rate limited"
    assert item.next_retry_at is not None


def test_generation_failure_is_retried_with_backoff(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "fails")
    worker, *_ = _build(store, contexts, channels, clock, generator=FakeGenerator(success=False))

    result = worker.run()

    assert result.failed == 1
    item = store.get(item_id)
    assert item.status == "failed"
    assert item.attempts == 1
    assert item.last_error == "upstream timeout"
    actions = [entry["action"] for entry in list_activity(store.conn)]
    assert "item_failed" in actions


def test_missing_context_fails_item(store, contexts, channels, clock):
    item_id = _enqueue(store, 4242, "ghost")
    worker, *_ = _build(store, contexts, channels, clock)

    worker.run()

    item = store.get(item_id)
    assert item.status == "failed"
    assert "context 4242 not found" in item.last_error


def test_handler_retryable_and_permanent_results(store, contexts, channels, clock):
    handlers = HandlerRegistry()
    handlers.register(_Echo(JobResult.failure("try later", retry_delay_seconds=60, max_attempts=4)))
    retry_id = _enqueue(store, 0, "retry", content_type="echo", source_ref={"message": "x"})
    worker, *_ = _build(store, contexts, channels, clock, handlers=handlers)

    worker.run()

    item = store.get(retry_id)
    assert item.status == "failed"
    assert item.next_retry_at == isoformat_utc(clock() + timedelta(seconds=60))

    handlers.register(_Echo(JobResult.permanent_failure("bad input")))
    fatal_id = _enqueue(store, 0, "fatal", content_type="echo", source_ref={"message": "x"})
    worker.run()
    assert store.get(fatal_id).status == "permanent_failure"


def test_handler_payload_missing_keys_is_permanent(store, contexts, channels, clock):
    handlers = HandlerRegistry()
    echo = _Echo()
    handlers.register(echo)
    item_id = _enqueue(store, 0, "nokeys", content_type="echo", source_ref={})
    worker, *_ = _build(store, contexts, channels, clock, handlers=handlers)

    worker.run()

    assert store.get(item_id).status == "permanent_failure"
    assert echo.calls == []


def test_time_budget_stops_batch(store, contexts, channels, clock):
    context = _context(contexts)
    for index in range(3):
        _enqueue(store, context.id, f"slow-{index}")
    worker, *_ = _build(
        store,
        contexts,
        channels,
        clock,
        monotonic=FakeMonotonic(step=10.0),
        time_budget_seconds=25,
        max_execution_time_seconds=55,
    )

    result = worker.run(batch_size=3)

    assert result.stopped_reason == "time_budget"
    assert result.processed < 3
    assert store.count_eligible() >= 1


def test_max_execution_time_stops_batch_before_time_budget(store, contexts, channels, clock):
    context = _context(contexts)
    for index in range(3):
        _enqueue(store, context.id, f"long-{index}")
    worker, *_ = _build(
        store,
        contexts,
        channels,
        clock,
        monotonic=FakeMonotonic(step=10.0),
        time_budget_seconds=25,
        max_execution_time_seconds=20,
    )

    result = worker.run(batch_size=3)

    assert result.stopped_reason == "max_execution_time"
    assert result.processed == 1
    assert store.count_eligible() == 2


class _LockStealingGenerator(FakeGenerator):
    """Lets the lock go stale mid-generation and hands the item to another owner."""

    def __init__(self, store, clock) -> None:
        super().__init__()
        self.store = store
        self.clock = clock
        self.new_token = None

    def generate(self, item, context):
        self.clock.advance(minutes=30)
        self.store.release_stale_locks(10)
        self.new_token = self.store.try_lock_by_id(item.id)
        return super().generate(item, context)


def test_lock_lost_during_generation_leaves_new_owner_alone(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "stolen")
    generator = _LockStealingGenerator(store, clock)
    worker, *_ = _build(store, contexts, channels, clock, generator=generator)

    result = worker.run(batch_size=1)

    (outcome,) = result.items
    assert outcome.outcome == "lock_lost"
    assert generator.new_token is not None
    item = store.get(item_id)
    assert item.status == "locked"
    assert item.lock_token == generator.new_token
    assert item.attempts == 0
    assert item.post_id is None
    assert item.last_error is None


def test_stale_locks_are_released_before_batch(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "stuck")
    store.lock_next_eligible()
    clock.advance(minutes=30)
    worker, *_ = _build(store, contexts, channels, clock)

    result = worker.run()

    assert result.stale_released == 1
    assert store.get(item_id).status == "review"


def test_process_single_rules(store, contexts, channels, clock):
    context = _context(contexts)
    skipped = _enqueue(store, context.id, "skipped", channel="nowhere", source_ref=_channel_payload())
    worker, *_ = _build(store, contexts, channels, clock)
    worker.run()
    assert store.get(skipped).status == "skipped"

    outcome = worker.process_single(skipped)
    assert outcome.outcome == "rejected"

    assert worker.process_single(9999).message == "not_found"

    failed = _enqueue(store, context.id, "failed-once")
    item = store.lock_next_eligible()
    store.mark_failed(failed, item.lock_token, "boom")
    outcome = worker.process_single(failed)
    assert outcome.outcome == "succeeded"
    assert store.get(failed).status == "review"

    outcome = worker.process_single(failed)
    assert outcome.outcome == "rejected"


def test_process_single_defers_when_generator_down(store, contexts, channels, clock):
    context = _context(contexts)
    item_id = _enqueue(store, context.id, "later")
    worker, *_ = _build(store, contexts, channels, clock, generator=FakeGenerator(ready=False))

    outcome = worker.process_single(item_id)

    assert outcome.outcome == "deferred"
    assert store.get(item_id).status == "pending"
