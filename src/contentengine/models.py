from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

PRIMARY_CHANNEL = "site"

STATUS_PENDING = "pending"
STATUS_LOCKED = "locked"
STATUS_GENERATING = "generating"
STATUS_PROCESSING = "processing"
STATUS_REVIEW = "review"
STATUS_PUBLISHED = "published"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_PERMANENT_FAILURE = "permanent_failure"
STATUS_SKIPPED = "skipped"

ALL_STATUSES = (
    STATUS_PENDING,
    STATUS_LOCKED,
    STATUS_GENERATING,
    STATUS_PROCESSING,
    STATUS_REVIEW,
    STATUS_PUBLISHED,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PERMANENT_FAILURE,
    STATUS_SKIPPED,
)
IN_FLIGHT_STATUSES = (STATUS_LOCKED, STATUS_GENERATING, STATUS_PROCESSING)
TERMINAL_STATUSES = (
    STATUS_REVIEW,
    STATUS_PUBLISHED,
    STATUS_DONE,
    STATUS_PERMANENT_FAILURE,
    STATUS_SKIPPED,
)
SUCCESS_STATUSES = (STATUS_REVIEW, STATUS_PUBLISHED, STATUS_DONE)

CONTEXT_EVENT_BASED = "event_based"
CONTEXT_SEASONAL = "seasonal"
CONTEXT_EVERGREEN = "evergreen"
CONTEXT_TYPES = (CONTEXT_EVENT_BASED, CONTEXT_SEASONAL, CONTEXT_EVERGREEN)

CONTEXT_ACTIVE = "active"
CONTEXT_PAUSED = "paused"
CONTEXT_ARCHIVED = "archived"
CONTEXT_STATUSES = (CONTEXT_ACTIVE, CONTEXT_PAUSED, CONTEXT_ARCHIVED)


@dataclass(frozen=True)
class QueueItem:
    id: int
    context_id: int
    content_type: str
    lang: str
    channel: str
    source_ref: dict[str, Any]
    unique_key: str
    priority: int
    status: str
    scheduled_at: str
    attempts: int
    next_retry_at: str | None
    lock_token: str | None
    locked_at: str | None
    last_error: str | None
    post_id: str | None
    external_id: str | None
    parent_post_id: str | None
    tokens_used: int
    cost: float
    result: dict[str, Any] | None
    created_at: str
    updated_at: str
    processed_at: str | None

    @property
    def is_primary_channel(self) -> bool:
        return self.channel == PRIMARY_CHANNEL

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class NewQueueItem:
    context_id: int
    content_type: str
    lang: str
    unique_key: str
    scheduled_at: str
    source_ref: dict[str, Any] = field(default_factory=dict)
    channel: str = PRIMARY_CHANNEL
    priority: int = 5


@dataclass(frozen=True)
class Event:
    date: str
    sport: str
    round: str
    venue: str
    teams: list[str]
    raw: dict[str, Any]

    @property
    def day(self) -> date:
        return date.fromisoformat(self.date[:10])


@dataclass(frozen=True)
class Context:
    id: int
    slug: str
    name: str
    type: str
    status: str
    priority: int
    daily_quota: int
    date_start: str | None
    date_end: str | None
    events: dict[str, Any]
    prompts_config: dict[str, Any]
    settings: dict[str, Any]
    created_at: str
    updated_at: str

    @property
    def event_list(self) -> list[dict[str, Any]]:
        events = self.events.get("events") or []
        return [event for event in events if isinstance(event, dict)]

    @property
    def venues(self) -> list[dict[str, Any]]:
        venues = self.events.get("venues") or []
        return [venue for venue in venues if isinstance(venue, dict)]

    @property
    def target_countries(self) -> list[str]:
        return [str(country) for country in self.events.get("target_countries") or []]

    @property
    def has_events(self) -> bool:
        return bool(self.event_list)

    @property
    def has_venues(self) -> bool:
        return bool(self.venues)

    def prompt_override(self, key: str, default: Any = None) -> Any:
        overrides = self.prompts_config.get("overrides") or {}
        if not isinstance(overrides, dict):
            return default
        return overrides.get(key, default)

    def is_active(self, today: date) -> bool:
        if self.status != CONTEXT_ACTIVE:
            return False
        if self.type == CONTEXT_EVERGREEN:
            return True
        if self.date_start and today < date.fromisoformat(self.date_start[:10]):
            return False
        if self.date_end and today > date.fromisoformat(self.date_end[:10]):
            return False
        return True
