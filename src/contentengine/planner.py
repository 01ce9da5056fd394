from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, time, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from .config import Config, normalize_language_code
from .content_types import (
    DEFAULT_ENABLED_TYPES,
    EVENT_TRIGGERED,
    FALLBACK,
    FALLBACK_CONTENT_TYPE,
    ON_DEMAND,
    RECURRING,
    ContentTypePolicy,
    get_policy,
)
from .contexts import ContextRepository
from .events import event_ref, filter_by_date_range, is_significant, parse_events, unique_sports, venue_slug
from .languages import MultilingualProvider, resolve_languages
from .models import Context, NewQueueItem
from .queue_store import QueueStore
from .results import PlannerRunResult
from .utils import isoformat_utc, log_event, parse_iso, slugify, stable_hash, utc_now

RECURRING_PERIODS = 2


def build_unique_key(slug: str, content_type: str, lang: str, ref: str) -> str:
    return f"{slug}|{content_type}|{lang}|{ref}"


class Planner:
    """Decides which content is due and enqueues it exactly once.

    Every candidate gets a deterministic unique key; the queue's unique
    constraint turns a re-run into a no-op, so the planner can be triggered
    as often as the operator likes.
    """

    def __init__(
        self,
        store: QueueStore,
        contexts: ContextRepository,
        config: Config,
        clock: Callable[[], datetime] = utc_now,
        language_provider: MultilingualProvider | None = None,
    ) -> None:
        self.store = store
        self.contexts = contexts
        self.config = config
        self.clock = clock
        self.language_provider = language_provider
        self.tz = ZoneInfo(config.app.timezone or "UTC")
        self.logger = logging.getLogger("contentengine.planner")

    def today(self) -> date:
        return self.clock().astimezone(self.tz).date()

    def run(self) -> PlannerRunResult:
        result = PlannerRunResult()
        today = self.today()
        contexts = self.contexts.list_active(today)
        log_event(self.logger, logging.INFO, "planner_started", contexts=len(contexts))
        for context in contexts:
            try:
                result.merge(self.plan_context(context))
            except Exception as exc:  # noqa: BLE001
                message = f"Context {context.slug}: {exc}"
                result.errors.append(message)
                log_event(
                    self.logger,
                    logging.ERROR,
                    "planner_context_failed",
                    context=context.slug,
                    error=str(exc),
                )
        log_event(
            self.logger,
            logging.INFO,
            "planner_finished",
            planned=result.planned,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    def plan_context(self, context: Context) -> PlannerRunResult:
        result = PlannerRunResult()
        languages = resolve_languages(context, self.config.languages, self.language_provider)
        for content_type in self.enabled_content_types(context):
            policy = get_policy(content_type)
            if policy is None:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "planner_unknown_content_type",
                    context=context.slug,
                    content_type=content_type,
                )
                continue
            for lang in languages:
                self._plan_content_type(context, policy, lang, result)
        return result

    def enabled_content_types(self, context: Context) -> list[str]:
        override = context.prompt_override("enabled_content_types")
        if isinstance(override, list) and override:
            return [str(item) for item in override]
        if not context.has_events and not context.has_venues:
            return [FALLBACK_CONTENT_TYPE]
        return list(DEFAULT_ENABLED_TYPES)

    def _plan_content_type(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        result: PlannerRunResult,
    ) -> None:
        if policy.planning_mode == RECURRING:
            self._plan_recurring(context, policy, lang, result)
        elif policy.planning_mode == EVENT_TRIGGERED:
            self._plan_event_triggered(context, policy, lang, result)
        elif policy.planning_mode == ON_DEMAND:
            self._plan_on_demand(context, policy, lang, result)
        elif policy.planning_mode == FALLBACK:
            self._plan_fallback(context, policy, lang, result)
        else:
            raise ValueError(f"unknown planning mode {policy.planning_mode}")

    def _plan_recurring(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        result: PlannerRunResult,
    ) -> None:
        for anchor in self.recurring_anchors():
            scheduled = self._clamp(self._local_midnight(anchor) - timedelta(days=policy.lead_days))
            self._enqueue(
                context,
                policy,
                lang,
                ref=anchor.isoformat(),
                source_ref={"week_start": anchor.isoformat()},
                scheduled_at=scheduled,
                result=result,
            )

    def recurring_anchors(self) -> list[date]:
        """This coming Monday (today if it is one) and the following cycles."""
        today = self.today()
        first = today + timedelta(days=(7 - today.weekday()) % 7)
        return [first + timedelta(days=7 * period) for period in range(RECURRING_PERIODS)]

    def _plan_event_triggered(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        result: PlannerRunResult,
    ) -> None:
        today = self.today()
        window_end = today + timedelta(
            days=policy.lead_days + self.config.planner.event_horizon_days
        )
        events = filter_by_date_range(parse_events(context.event_list), today, window_end)
        for event in events:
            if not is_significant(event):
                continue
            scheduled = self._clamp(self._event_datetime(event.date) - timedelta(days=policy.lead_days))
            self._enqueue(
                context,
                policy,
                lang,
                ref=event_ref(event),
                source_ref={"event": event.raw},
                scheduled_at=scheduled,
                result=result,
            )

    def _plan_on_demand(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        result: PlannerRunResult,
    ) -> None:
        now = self.clock()
        for ref, source_ref in self._on_demand_items(context, policy):
            self._enqueue(
                context,
                policy,
                lang,
                ref=ref,
                source_ref=source_ref,
                scheduled_at=now,
                result=result,
            )

    def _on_demand_items(
        self, context: Context, policy: ContentTypePolicy
    ) -> list[tuple[str, dict[str, Any]]]:
        if policy.name == "sport_guide":
            sports = unique_sports(parse_events(context.event_list))
            return [(slugify(sport, separator="_"), {"sport": sport}) for sport in sports]
        if policy.name == "venue_guide":
            return [(venue_slug(venue), {"venue": venue}) for venue in context.venues]
        if policy.name == "transport_guide":
            items = []
            for venue in context.venues:
                slug = venue_slug(venue)
                items.append(
                    (
                        f"transport_to_{slug}",
                        {"destination": str(venue.get("name") or slug), "venue_slug": slug},
                    )
                )
            return items
        if policy.name == "nationality_guide":
            nationalities = context.target_countries or self.config.planner.nationalities
            return [
                (slugify(nationality, separator="_"), {"nationality": nationality})
                for nationality in nationalities
            ]
        raise ValueError(f"no on-demand item list for {policy.name}")

    def _plan_fallback(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        result: PlannerRunResult,
    ) -> None:
        legacy_keys = [
            build_unique_key(context.slug, legacy, lang, context.slug)
            for legacy in policy.legacy_names
        ]
        self._enqueue(
            context,
            policy,
            lang,
            ref=context.slug,
            source_ref={"context": context.slug, "type": "evergreen"},
            scheduled_at=self.clock(),
            result=result,
            legacy_keys=legacy_keys,
        )

    def _enqueue(
        self,
        context: Context,
        policy: ContentTypePolicy,
        lang: str,
        ref: str,
        source_ref: dict[str, Any],
        scheduled_at: datetime,
        result: PlannerRunResult,
        legacy_keys: list[str] | None = None,
    ) -> None:
        unique_key = build_unique_key(context.slug, policy.name, lang, ref)
        for legacy_key in legacy_keys or []:
            if self.store.exists(legacy_key):
                result.skipped += 1
                return
        item_id = self.store.insert(
            NewQueueItem(
                context_id=context.id,
                content_type=policy.name,
                lang=lang,
                unique_key=unique_key,
                scheduled_at=isoformat_utc(scheduled_at),
                source_ref=source_ref,
                priority=policy.priority,
            )
        )
        if item_id is None:
            result.skipped += 1
            return
        result.planned += 1
        log_event(
            self.logger,
            logging.INFO,
            "planner_item_queued",
            item_id=item_id,
            unique_key=unique_key,
            scheduled_at=isoformat_utc(scheduled_at),
        )

    def queue_manual(
        self,
        context_id: int,
        content_type: str,
        lang: str,
        source_ref: dict[str, Any] | None = None,
        priority: int | None = None,
        scheduled_at: str | datetime | None = None,
        allow_duplicate: bool = False,
    ) -> int:
        context = self.contexts.get(context_id)
        if context is None:
            raise ValueError(f"context not found: {context_id}")
        content_type = str(content_type or "").strip()
        if not content_type:
            raise ValueError("content_type is required")
        lang = normalize_language_code(lang)
        if not lang:
            raise ValueError("lang is required")
        supported = self.config.languages.supported
        if supported and lang not in supported:
            raise ValueError(f"unsupported language: {lang}")

        now = self.clock()
        if source_ref is None:
            source_ref = {"ref": now.astimezone(self.tz).strftime("%Y-%m-%d-%H%M%S"), "manual": True}
        ref = str(source_ref.get("ref") or stable_hash(source_ref))
        unique_key = build_unique_key(context.slug, content_type, lang, ref)
        if self.store.exists(unique_key):
            if not allow_duplicate:
                raise ValueError(f"duplicate queue item: {unique_key}")
            unique_key = f"{unique_key}|manual-{secrets.token_hex(4)}"

        if isinstance(scheduled_at, datetime):
            when = scheduled_at
        elif scheduled_at:
            when = parse_iso(scheduled_at)
            if when is None:
                raise ValueError(f"invalid scheduled_at: {scheduled_at}")
        else:
            when = now

        item_id = self.store.insert(
            NewQueueItem(
                context_id=context.id,
                content_type=content_type,
                lang=lang,
                unique_key=unique_key,
                scheduled_at=isoformat_utc(when),
                source_ref=source_ref,
                priority=int(priority) if priority is not None else 5,
            )
        )
        if item_id is None:
            raise ValueError(f"duplicate queue item: {unique_key}")
        log_event(
            self.logger,
            logging.INFO,
            "manual_item_queued",
            item_id=item_id,
            unique_key=unique_key,
        )
        return item_id

    def _local_midnight(self, day: date) -> datetime:
        return datetime.combine(day, time(0, 0), tzinfo=self.tz)

    def _event_datetime(self, value: str) -> datetime:
        if len(value) > 10:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=self.tz)
            return parsed
        return self._local_midnight(date.fromisoformat(value))

    def _clamp(self, scheduled: datetime) -> datetime:
        now = self.clock()
        return now if scheduled < now else scheduled
