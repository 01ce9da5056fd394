from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import WebhookChannelConfig
from .httpclient import request_json
from .models import Context, NewQueueItem, PRIMARY_CHANNEL, QueueItem
from .queue_store import QueueStore
from .results import ChannelPublishResult, ChannelValidation
from .utils import isoformat_utc, log_event, utc_now

DISTRIBUTION_PAYLOAD_TYPE = "channel_distribution"
DEFAULT_DELAY_MINUTES = 10


class ChannelAdapter:
    """One auxiliary distribution destination."""

    channel_id: str = ""
    delay_minutes: int = DEFAULT_DELAY_MINUTES

    def is_enabled(self) -> bool:
        raise NotImplementedError

    def validate_configuration(self) -> ChannelValidation:
        raise NotImplementedError

    def publish(
        self, content: dict[str, Any], item: QueueItem, context: Context | None
    ) -> ChannelPublishResult:
        raise NotImplementedError


class ChannelRegistry:
    def __init__(self) -> None:
        self._adapters: dict[str, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        if not adapter.channel_id:
            raise ValueError("channel adapter needs a channel_id")
        if adapter.channel_id == PRIMARY_CHANNEL:
            raise ValueError(f"{PRIMARY_CHANNEL} is the primary channel")
        self._adapters[adapter.channel_id] = adapter

    def get(self, channel_id: str) -> ChannelAdapter | None:
        return self._adapters.get(channel_id)

    def has(self, channel_id: str) -> bool:
        return channel_id in self._adapters

    def all(self) -> dict[str, ChannelAdapter]:
        return dict(self._adapters)

    def enabled(self) -> dict[str, ChannelAdapter]:
        return {
            channel_id: adapter
            for channel_id, adapter in self._adapters.items()
            if adapter.is_enabled()
        }


class WebhookChannel(ChannelAdapter):
    """Posts the content snapshot as JSON to an operator-configured URL."""

    channel_id = "webhook"

    def __init__(self, config: WebhookChannelConfig) -> None:
        self.config = config
        self.delay_minutes = config.delay_minutes

    def is_enabled(self) -> bool:
        return self.config.enabled

    def validate_configuration(self) -> ChannelValidation:
        url = self.config.url.strip()
        if not url:
            return ChannelValidation(False, "webhook url is not configured")
        if not (url.startswith("https://") or url.startswith("http://")):
            return ChannelValidation(False, "webhook url must be http(s)")
        return ChannelValidation(True, "ok")

    def publish(
        self, content: dict[str, Any], item: QueueItem, context: Context | None
    ) -> ChannelPublishResult:
        headers: dict[str, str] = {}
        secret = os.environ.get(self.config.secret_env, "") if self.config.secret_env else ""
        if secret:
            headers["X-Webhook-Secret"] = secret
        payload = {
            "queue_item_id": item.id,
            "context": context.slug if context else None,
            "content_type": item.content_type,
            "lang": item.lang,
            "content": content,
        }
        try:
            response = request_json("POST", self.config.url, headers, payload)
        except ValueError as exc:
            return ChannelPublishResult(False, None, str(exc))
        external_id = response.get("id") or response.get("external_id")
        return ChannelPublishResult(True, str(external_id) if external_id else None, "posted")


class ChannelDistributor:
    """Fans a published primary item out to every enabled auxiliary channel."""

    def __init__(
        self,
        store: QueueStore,
        registry: ChannelRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.logger = logging.getLogger("contentengine.channels")

    def distribute(
        self,
        item: QueueItem,
        content: dict[str, Any],
        result_id: str,
        permalink: str | None,
    ) -> int:
        if not item.is_primary_channel:
            return 0
        created = 0
        for channel_id, adapter in self.registry.enabled().items():
            unique_key = f"{item.unique_key}|{channel_id}"
            now = self.clock()
            payload = {
                "type": DISTRIBUTION_PAYLOAD_TYPE,
                "parent_post_id": result_id,
                "parent_queue_id": item.id,
                "parent_unique_key": item.unique_key,
                "channel": channel_id,
                "created_at": isoformat_utc(now),
                "content_snapshot": {
                    "title": content.get("title") or "",
                    "excerpt": content.get("excerpt") or "",
                    "permalink": permalink or "",
                    "featured_image": content.get("featured_image"),
                    "content_type": item.content_type,
                    "lang": item.lang,
                },
            }
            scheduled = now + timedelta(minutes=max(adapter.delay_minutes, 0))
            new_id = self.store.insert(
                NewQueueItem(
                    context_id=item.context_id,
                    content_type=item.content_type,
                    lang=item.lang,
                    unique_key=unique_key,
                    scheduled_at=isoformat_utc(scheduled),
                    source_ref=payload,
                    channel=channel_id,
                    priority=item.priority,
                )
            )
            if new_id is None:
                continue
            created += 1
            log_event(
                self.logger,
                logging.INFO,
                "channel_item_queued",
                item_id=new_id,
                channel=channel_id,
                parent_item_id=item.id,
            )
        return created
