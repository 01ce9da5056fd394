from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class LockLostError(RuntimeError):
    """A token-verified transition found another owner (or no owner) on the item."""

    def __init__(self, item_id: int, action: str) -> None:
        super().__init__(f"lock lost on item {item_id} during {action}")
        self.item_id = item_id
        self.action = action


class ContextUnavailableError(RuntimeError):
    pass


class ExecutionError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobResult:
    ok: bool
    retryable: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    retry_delay_seconds: int | None = None
    max_attempts: int | None = None

    @classmethod
    def success(cls, data: dict[str, Any] | None = None) -> "JobResult":
        return cls(ok=True, data=dict(data or {}))

    @classmethod
    def failure(
        cls,
        error: str,
        data: dict[str, Any] | None = None,
        retry_delay_seconds: int | None = None,
        max_attempts: int | None = None,
    ) -> "JobResult":
        return cls(
            ok=False,
            retryable=True,
            data=dict(data or {}),
            error=error,
            retry_delay_seconds=retry_delay_seconds,
            max_attempts=max_attempts,
        )

    @classmethod
    def permanent_failure(cls, error: str, data: dict[str, Any] | None = None) -> "JobResult":
        return cls(ok=False, retryable=False, data=dict(data or {}), error=error)


READY = "ready"
TRANSIENT = "transient"
PERMANENT = "permanent"


@dataclass(frozen=True)
class ReadinessResult:
    state: str
    reason: str = ""

    @property
    def ready(self) -> bool:
        return self.state == READY

    @classmethod
    def ok(cls) -> "ReadinessResult":
        return cls(READY)

    @classmethod
    def transient(cls, reason: str) -> "ReadinessResult":
        return cls(TRANSIENT, reason)

    @classmethod
    def permanent(cls, reason: str) -> "ReadinessResult":
        return cls(PERMANENT, reason)


# Per-item outcomes reported by the worker.
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DEFERRED = "deferred"
OUTCOME_LOCK_LOST = "lock_lost"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True)
class ItemOutcome:
    item_id: int
    outcome: str
    status: str | None = None
    message: str = ""
    duration_ms: int = 0


STOP_TIME_BUDGET = "time_budget"
STOP_MAX_EXECUTION_TIME = "max_execution_time"
STOP_NO_MORE_ITEMS = "no_more_items"
STOP_BATCH_COMPLETE = "batch_complete"


@dataclass
class WorkerRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    stale_released: int = 0
    stopped_reason: str = STOP_BATCH_COMPLETE
    items: list[ItemOutcome] = field(default_factory=list)


@dataclass
class PlannerRunResult:
    planned: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "PlannerRunResult") -> None:
        self.planned += other.planned
        self.skipped += other.skipped
        self.errors.extend(other.errors)


@dataclass(frozen=True)
class GenerationStats:
    tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0


@dataclass(frozen=True)
class GenerationResult:
    success: bool
    content: dict[str, Any] = field(default_factory=dict)
    stats: GenerationStats = field(default_factory=GenerationStats)
    error: str | None = None


@dataclass(frozen=True)
class GeneratorReadiness:
    ready: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class QualityResult:
    passes: bool
    score: int
    breakdown: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChannelValidation:
    valid: bool
    message: str = ""


@dataclass(frozen=True)
class ChannelPublishResult:
    success: bool
    external_id: str | None = None
    message: str = ""
