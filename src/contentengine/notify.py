from __future__ import annotations

import logging

from .httpclient import request_json
from .models import Context, QueueItem
from .utils import log_event


class ReviewNotifier:
    """Tells an operator that an item is waiting in review. Best effort only."""

    def __init__(self, webhook_url: str = "") -> None:
        self.webhook_url = webhook_url
        self.logger = logging.getLogger("contentengine.notify")

    def notify_review(
        self, item: QueueItem, context: Context, result_id: str, score: int
    ) -> None:
        log_event(
            self.logger,
            logging.INFO,
            "review_requested",
            item_id=item.id,
            context=context.slug,
            result_id=result_id,
            score=score,
        )
        if not self.webhook_url:
            return
        payload = {
            "text": f"[{context.name}] {item.content_type} ({item.lang}) ready for review, score {score}/100",
            "queue_item_id": item.id,
            "result_id": result_id,
        }
        try:
            request_json("POST", self.webhook_url, None, payload, timeout=10)
        except ValueError as exc:
            log_event(self.logger, logging.WARNING, "review_notify_failed", item_id=item.id, error=str(exc))
