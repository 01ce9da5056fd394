from __future__ import annotations

import pytest

from contentengine.activity import list_activity, record_activity
from contentengine.handlers import (
    CONTENT_GENERATION,
    HandlerRegistry,
    JobHandler,
    QueueCleanupHandler,
    QueueDispatcher,
)


class _Ping(JobHandler):
    job_type = "ping"
    required_keys = ("host",)

    def handle(self, payload, item_id, attempt):
        raise NotImplementedError


def test_registry_register_and_unregister():
    registry = HandlerRegistry()
    registry.register(_Ping())
    assert registry.has("ping")
    assert isinstance(registry.get("ping"), _Ping)
    assert registry.registered_types() == ["ping"]
    assert registry.unregister("ping") is True
    assert registry.get("ping") is None
    assert registry.unregister("ping") is False


def test_registry_factory_is_built_once():
    built = []

    def _factory():
        built.append(1)
        return _Ping()

    registry = HandlerRegistry()
    registry.register_factory("ping", _factory)
    assert registry.has("ping")
    assert built == []
    first = registry.get("ping")
    assert registry.get("ping") is first
    assert built == [1]


def test_registry_rejects_reserved_and_mismatched_types():
    registry = HandlerRegistry()

    class _Reserved(JobHandler):
        job_type = CONTENT_GENERATION

    with pytest.raises(ValueError):
        registry.register(_Reserved())
    with pytest.raises(ValueError):
        registry.register(JobHandler())

    registry.register_factory("other", _Ping)
    with pytest.raises(ValueError):
        registry.get("other")


def test_dispatcher_dedupes_identical_payloads(store):
    registry = HandlerRegistry()
    registry.register(_Ping())
    dispatcher = QueueDispatcher(store, registry, clock=store.clock)

    first = dispatcher.dispatch("ping", {"host": "a", "port": 1})
    again = dispatcher.dispatch("ping", {"port": 1, "host": "a"})
    other = dispatcher.dispatch("ping", {"host": "b"}, delay_seconds=120)

    assert first is not None
    assert again is None
    assert other is not None
    assert store.get(first).source_ref == {"host": "a", "port": 1}
    assert store.get(first).priority == 10
    assert store.count_eligible() == 1


def test_dispatcher_validates_job_type_and_payload(store):
    registry = HandlerRegistry()
    registry.register(_Ping())
    dispatcher = QueueDispatcher(store, registry)

    with pytest.raises(ValueError, match="no handler"):
        dispatcher.dispatch("unknown", {})
    with pytest.raises(ValueError, match="host"):
        dispatcher.dispatch("ping", {})


def test_dispatch_batch(store):
    registry = HandlerRegistry()
    registry.register(_Ping())
    dispatcher = QueueDispatcher(store, registry)
    ids = dispatcher.dispatch_batch(
        [
            {"job_type": "ping", "payload": {"host": "a"}},
            {"job_type": "ping", "payload": {"host": "a"}},
            {"job_type": "ping", "payload": {"host": "c"}, "priority": 3},
        ]
    )
    assert ids[0] is not None
    assert ids[1] is None
    assert store.get(ids[2]).priority == 3


def test_cleanup_handler_purges_queue_and_activity(store, clock):
    record_activity(store.conn, "something", "recent")
    handler = QueueCleanupHandler(store, done_days=30, failed_days=60)

    result = handler.handle({}, item_id=1, attempt=1)

    assert result.ok
    assert result.data == {"deleted": 0, "activity_deleted": 0}
    assert len(list_activity(store.conn)) == 1

    bad = handler.handle({"done_days": 0}, item_id=1, attempt=1)
    assert not bad.ok
    assert not bad.retryable
