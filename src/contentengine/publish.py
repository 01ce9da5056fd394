from __future__ import annotations

import os
from typing import Any

import yaml

from .models import Context, QueueItem, STATUS_PUBLISHED
from .utils import slugify, utc_now_iso


class MarkdownPublisher:
    """Writes generated content as Hugo markdown with YAML frontmatter.

    The result id is ``<lang>/<slug>``; review items are written as drafts.
    """

    def __init__(self, output_dir: str, base_url: str = "", section: str = "") -> None:
        self.output_dir = output_dir
        self.base_url = base_url.rstrip("/")
        self.section = section.strip("/")

    def publish(
        self,
        content: dict[str, Any],
        item: QueueItem,
        context: Context,
        status: str,
    ) -> str:
        title = str(content.get("title") or "").strip()
        if not title:
            raise ValueError("content has no title")
        slug = f"{slugify(title)}-{item.id}"
        lang = item.lang or "en"
        directory = os.path.join(self.output_dir, lang, self.section) if self.section else os.path.join(self.output_dir, lang)
        os.makedirs(directory, exist_ok=True)
        frontmatter = {
            "title": title,
            "date": utc_now_iso(),
            "draft": status != STATUS_PUBLISHED,
            "summary": str(content.get("excerpt") or ""),
            "tags": list(content.get("tags") or []),
            "context": context.slug,
            "content_type": item.content_type,
            "lang": lang,
            "queue_item_id": item.id,
        }
        if "quality_score" in content:
            frontmatter["quality_score"] = content["quality_score"]
        text = "---\n"
        text += yaml.safe_dump(
            frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=False
        )
        text += "---\n\n"
        text += str(content.get("body") or "").strip() + "\n"
        path = os.path.join(directory, f"{slug}.md")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return f"{lang}/{slug}"

    def permalink(self, result_id: str) -> str | None:
        if not self.base_url:
            return None
        lang, _, slug = result_id.partition("/")
        parts = [self.base_url, lang]
        if self.section:
            parts.append(self.section)
        parts.append(slug)
        return "/".join(parts) + "/"
