from __future__ import annotations

from typing import Any, Protocol

from .models import Context, QueueItem
from .results import GenerationResult, GeneratorReadiness, QualityResult


class Generator(Protocol):
    def check_readiness(self) -> GeneratorReadiness:
        ...

    def generate(self, item: QueueItem, context: Context) -> GenerationResult:
        ...


class Scorer(Protocol):
    def passes_quality(self, content: dict[str, Any]) -> QualityResult:
        ...


class Publisher(Protocol):
    def publish(
        self,
        content: dict[str, Any],
        item: QueueItem,
        context: Context,
        status: str,
    ) -> str:
        ...

    def permalink(self, result_id: str) -> str | None:
        ...


class Notifier(Protocol):
    def notify_review(
        self, item: QueueItem, context: Context, result_id: str, score: int
    ) -> None:
        ...
