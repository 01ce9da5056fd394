from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone

import pytest

from contentengine.channels import ChannelAdapter, ChannelRegistry
from contentengine.config import DEFAULT_CONFIG, build_config
from contentengine.contexts import ContextRepository
from contentengine.queue_store import QueueStore
from contentengine.results import (
    ChannelPublishResult,
    ChannelValidation,
    GenerationResult,
    GenerationStats,
    GeneratorReadiness,
    QualityResult,
)
from contentengine.storage import init_db

# 2026-06-10 is a Wednesday.
WEDNESDAY_NOON = datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = WEDNESDAY_NOON) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self, step: float = 0.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


class FakeGenerator:
    def __init__(self, ready: bool = True, success: bool = True) -> None:
        self.ready = ready
        self.success = success
        self.readiness_calls = 0
        self.generated: list[int] = []

    def check_readiness(self) -> GeneratorReadiness:
        self.readiness_calls += 1
        if self.ready:
            return GeneratorReadiness(True)
        return GeneratorReadiness(False, ["model offline"])

    def generate(self, item, context) -> GenerationResult:
        self.generated.append(item.id)
        if not self.success:
            return GenerationResult(False, error="upstream timeout")
        return GenerationResult(
            True,
            content={
                "title": f"{context.name} {item.content_type}",
                "excerpt": "A short excerpt.",
                "body": "## Heading\n\nBody text.",
            },
            stats=GenerationStats(tokens=120, cost=0.01, duration_ms=5),
        )


class FakeScorer:
    def __init__(self, score: int = 90) -> None:
        self.score = score

    def passes_quality(self, content) -> QualityResult:
        return QualityResult(self.score >= 60, self.score, {"fake": self.score})


class FakePublisher:
    def __init__(self) -> None:
        self.published: list[tuple[int, str]] = []

    def publish(self, content, item, context, status) -> str:
        self.published.append((item.id, status))
        return f"{item.lang}/post-{item.id}"

    def permalink(self, result_id: str) -> str:
        return f"https://example.test/{result_id}/"


class FakeNotifier:
    def __init__(self) -> None:
        self.notified: list[int] = []

    def notify_review(self, item, context, result_id, score) -> None:
        self.notified.append(item.id)


class FakeAdapter(ChannelAdapter):
    def __init__(
        self,
        channel_id: str = "social",
        enabled: bool = True,
        valid: bool = True,
        success: bool = True,
        delay_minutes: int = 10,
    ) -> None:
        self.channel_id = channel_id
        self.enabled = enabled
        self.valid = valid
        self.success = success
        self.delay_minutes = delay_minutes
        self.published: list[dict] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def validate_configuration(self) -> ChannelValidation:
        return ChannelValidation(self.valid, "ok" if self.valid else "missing token")

    def publish(self, content, item, context) -> ChannelPublishResult:
        self.published.append(content)
        if not self.success:
            return ChannelPublishResult(False, None, "rate limited")
        return ChannelPublishResult(True, f"ext-{item.id}", "posted")


def make_config(**sections):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in sections.items():
        cfg[section].update(values)
    return build_config(cfg)


@pytest.fixture(autouse=True)
def _sqlite_only(monkeypatch):
    monkeypatch.delenv("CE_DB_URL", raising=False)


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(conn, clock):
    return QueueStore(conn, clock=clock)


@pytest.fixture
def contexts(conn):
    return ContextRepository(conn)


@pytest.fixture
def channels():
    return ChannelRegistry()
