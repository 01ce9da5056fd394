from __future__ import annotations

import threading
from datetime import timedelta

from conftest import FakeClock

from contentengine.models import NewQueueItem
from contentengine.queue_store import QueueStore
from contentengine.storage import init_db
from contentengine.utils import isoformat_utc, parse_iso


def _add(store, key: str, priority: int = 5, offset_minutes: int = -1) -> int:
    item_id = store.insert(
        NewQueueItem(
            context_id=1,
            content_type="weekly_guide",
            lang="en",
            unique_key=key,
            scheduled_at=isoformat_utc(store.clock() + timedelta(minutes=offset_minutes)),
            priority=priority,
        )
    )
    assert item_id is not None
    return item_id


def test_insert_is_idempotent_on_unique_key(store):
    first = _add(store, "ctx|weekly_guide|en|2026-06-15")
    second = store.insert(
        NewQueueItem(
            context_id=1,
            content_type="weekly_guide",
            lang="en",
            unique_key="ctx|weekly_guide|en|2026-06-15",
            scheduled_at=store.now_iso(),
        )
    )
    assert second is None
    assert store.exists("ctx|weekly_guide|en|2026-06-15")
    assert store.get_by_unique_key("ctx|weekly_guide|en|2026-06-15").id == first


def test_lock_orders_by_schedule_then_priority(store):
    oldest = _add(store, "a", priority=2, offset_minutes=-30)
    late = _add(store, "b", priority=9, offset_minutes=-1)
    tied_low = _add(store, "c", priority=3, offset_minutes=-10)
    tied_high = _add(store, "d", priority=9, offset_minutes=-10)

    order = []
    for _ in range(4):
        item = store.lock_next_eligible()
        order.append(item.id)
    assert order == [oldest, tied_high, tied_low, late]
    assert store.lock_next_eligible() is None


def test_future_items_are_not_eligible(store, clock):
    item_id = _add(store, "future", offset_minutes=30)
    assert store.lock_next_eligible() is None
    assert store.count_eligible() == 0

    clock.advance(minutes=31)
    item = store.lock_next_eligible()
    assert item.id == item_id
    assert item.status == "locked"
    assert item.lock_token


def test_exclude_ids_skips_deferred_items(store):
    first = _add(store, "first", priority=9)
    second = _add(store, "second", priority=1)
    item = store.lock_next_eligible(exclude_ids=[first])
    assert item.id == second


def test_concurrent_lockers_never_share_an_item(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    clock = FakeClock()
    seed = QueueStore(init_db(db_path), clock=clock)
    expected = {_add(seed, f"item-{index}") for index in range(12)}

    claimed: dict[str, list[int]] = {"a": [], "b": []}
    barrier = threading.Barrier(2)

    def _run(name: str) -> None:
        worker_store = QueueStore(init_db(db_path), clock=clock)
        barrier.wait()
        while True:
            item = worker_store.lock_next_eligible()
            if item is None:
                return
            claimed[name].append(item.id)

    threads = [threading.Thread(target=_run, args=(name,)) for name in claimed]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not set(claimed["a"]) & set(claimed["b"])
    assert set(claimed["a"]) | set(claimed["b"]) == expected


class _ContendedStore(QueueStore):
    """Another worker wins the race for every id in ``contested``."""

    def __init__(self, conn, rival, contested, clock) -> None:
        super().__init__(conn, clock=clock)
        self.rival = rival
        self.contested = set(contested)

    def _claim(self, item_id, now):
        if item_id in self.contested:
            assert self.rival.try_lock_by_id(item_id)
        return super()._claim(item_id, now)


def test_lock_keeps_looking_when_candidates_are_taken(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    clock = FakeClock()
    rival = QueueStore(init_db(db_path), clock=clock)
    ids = [_add(rival, f"item-{index}", offset_minutes=-20 + index) for index in range(7)]
    store = _ContendedStore(init_db(db_path), rival, ids[:5], clock)

    item = store.lock_next_eligible()

    assert item is not None
    assert item.id == ids[5]
    assert store.count_eligible() == 1


def test_transition_requires_matching_token(store):
    item_id = _add(store, "token")
    item = store.lock_next_eligible()
    assert store.mark_generating(item_id, "not-the-token") is False
    assert store.get(item_id).status == "locked"
    assert store.mark_generating(item_id, item.lock_token) is True
    assert store.get(item_id).status == "generating"


def test_mark_failed_schedules_backoff(store, clock):
    item_id = _add(store, "backoff")
    item = store.lock_next_eligible()

    status = store.mark_failed(item_id, item.lock_token, "boom")

    assert status == "failed"
    failed = store.get(item_id)
    assert failed.attempts == 1
    assert failed.lock_token is None
    assert failed.last_error == "boom"
    assert parse_iso(failed.next_retry_at) == clock() + timedelta(minutes=15)
    assert store.lock_next_eligible() is None

    clock.advance(minutes=16)
    retried = store.lock_next_eligible()
    assert retried.id == item_id
    status = store.mark_failed(item_id, retried.lock_token, "boom again")
    assert status == "failed"
    assert parse_iso(store.get(item_id).next_retry_at) == clock() + timedelta(minutes=30)


def test_backoff_is_capped(store):
    assert store.backoff_delay(1) == timedelta(minutes=15)
    assert store.backoff_delay(4) == timedelta(minutes=120)
    assert store.backoff_delay(10) == timedelta(minutes=240)


def test_custom_retry_delay_overrides_backoff(store, clock):
    item_id = _add(store, "custom")
    item = store.lock_next_eligible()
    store.mark_failed(item_id, item.lock_token, "slow down", retry_delay_seconds=90)
    assert parse_iso(store.get(item_id).next_retry_at) == clock() + timedelta(seconds=90)


def test_exhausted_item_becomes_permanent_failure(store, clock):
    item_id = _add(store, "exhaust")
    for attempt in range(1, 6):
        item = store.lock_next_eligible()
        assert item is not None and item.id == item_id
        status = store.mark_failed(item_id, item.lock_token, f"fail {attempt}")
        clock.advance(hours=5)

    assert status == "permanent_failure"
    final = store.get(item_id)
    assert final.attempts == 5
    assert final.next_retry_at is None
    clock.advance(days=10)
    assert store.lock_next_eligible() is None


def test_handler_ceiling_overrides_store_default(store):
    item_id = _add(store, "ceiling")
    item = store.lock_next_eligible()
    assert store.mark_failed(item_id, item.lock_token, "nope", max_attempts=1) == "permanent_failure"


def test_mark_failed_reports_lost_lock(store):
    item_id = _add(store, "lost")
    store.lock_next_eligible()
    assert store.mark_failed(item_id, "stale-token", "boom") is None
    assert store.get(item_id).attempts == 0


def test_release_stale_locks(store, clock):
    item_id = _add(store, "stale")
    item = store.lock_next_eligible()
    store.mark_generating(item_id, item.lock_token)

    assert store.release_stale_locks(timeout_minutes=10) == 0
    clock.advance(minutes=11)
    assert store.release_stale_locks(timeout_minutes=10) == 1

    released = store.get(item_id)
    assert released.status == "pending"
    assert released.lock_token is None
    assert store.mark_generating(item_id, item.lock_token) is False
    assert store.lock_next_eligible().id == item_id


def test_release_lock_returns_retry_items_to_failed(store, clock):
    item_id = _add(store, "release")
    item = store.lock_next_eligible()
    store.mark_failed(item_id, item.lock_token, "boom")
    clock.advance(minutes=20)
    relocked = store.lock_next_eligible()

    assert store.release_lock(item_id, relocked.lock_token) is True
    released = store.get(item_id)
    assert released.status == "failed"
    assert released.attempts == 1
    assert store.lock_next_eligible().id == item_id


def test_retry_resets_failed_items(store):
    item_id = _add(store, "retry")
    item = store.lock_next_eligible()
    store.mark_permanent_failure(item_id, item.lock_token, "bad payload")
    assert store.get(item_id).status == "permanent_failure"

    assert store.retry(item_id) is True
    reset = store.get(item_id)
    assert reset.status == "pending"
    assert reset.attempts == 0
    assert reset.last_error is None


def test_retry_refuses_finished_items(store):
    item_id = _add(store, "done")
    item = store.lock_next_eligible()
    store.mark_completed(item_id, item.lock_token, "done", result={"ok": True})
    assert store.retry(item_id) is False
    assert store.get(item_id).result == {"ok": True}


def test_purge_old_respects_retention(store, clock):
    done_id = _add(store, "old-done")
    item = store.lock_next_eligible()
    store.mark_completed(done_id, item.lock_token, "published", post_id="en/x")
    failed_id = _add(store, "old-failed")
    item = store.lock_next_eligible()
    store.mark_failed(failed_id, item.lock_token, "boom", max_attempts=1)
    pending_id = _add(store, "pending")

    clock.advance(days=31)
    assert store.purge_old(done_days=30, failed_days=60) == 1
    assert store.get(done_id) is None
    assert store.get(failed_id) is not None

    clock.advance(days=30)
    assert store.purge_old(done_days=30, failed_days=60) == 1
    assert store.get(failed_id) is None
    assert store.get(pending_id) is not None


def test_list_items_and_counts(store):
    _add(store, "one")
    _add(store, "two")
    store.lock_next_eligible()
    assert store.status_counts() == {"locked": 1, "pending": 1}
    assert len(store.list_items(status="pending")) == 1
    assert store.count_for_context(1) == 2
