from __future__ import annotations

import logging
from datetime import date
from typing import Any

from .models import (
    CONTEXT_ACTIVE,
    CONTEXT_EVERGREEN,
    CONTEXT_STATUSES,
    CONTEXT_TYPES,
    Context,
)
from .utils import json_dumps, json_loads, log_event, slugify, utc_now_iso

_COLUMNS = (
    "id",
    "slug",
    "name",
    "type",
    "status",
    "priority",
    "daily_quota",
    "date_start",
    "date_end",
    "events_json",
    "prompts_json",
    "settings_json",
    "created_at",
    "updated_at",
)
_SELECT = "SELECT " + ", ".join(_COLUMNS) + " FROM contexts"

_EDITABLE = {
    "name",
    "type",
    "status",
    "priority",
    "daily_quota",
    "date_start",
    "date_end",
    "events",
    "prompts_config",
    "settings",
}


class ContextInUseError(ValueError):
    pass


class ContextRepository:
    def __init__(self, conn) -> None:
        self.conn = conn
        self.logger = logging.getLogger("contentengine.contexts")

    def create(self, data: dict[str, Any]) -> Context:
        values = _normalize_context_data(data, require_name=True)
        slug = slugify(str(data.get("slug") or values["name"]))
        now = utc_now_iso()
        cursor = self.conn.execute(
            """
            INSERT INTO contexts
                (slug, name, type, status, priority, daily_quota, date_start, date_end,
                 events_json, prompts_json, settings_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (slug) DO NOTHING
            RETURNING id
            """,
            (
                slug,
                values["name"],
                values.get("type", CONTEXT_EVERGREEN),
                values.get("status", CONTEXT_ACTIVE),
                values.get("priority", 5),
                values.get("daily_quota", 10),
                values.get("date_start"),
                values.get("date_end"),
                json_dumps(values.get("events") or {}),
                json_dumps(values.get("prompts_config") or {}),
                json_dumps(values.get("settings") or {}),
                now,
                now,
            ),
        )
        row = cursor.fetchone()
        self.conn.commit()
        if not row:
            raise ValueError(f"context slug already exists: {slug}")
        log_event(self.logger, logging.INFO, "context_created", context_id=row[0], slug=slug)
        context = self.get(int(row[0]))
        if context is None:
            raise KeyError(int(row[0]))
        return context

    def update(self, context_id: int, data: dict[str, Any]) -> Context:
        if self.get(context_id) is None:
            raise KeyError(context_id)
        values = _normalize_context_data(data, require_name=False)
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in values.items():
            column = {
                "events": "events_json",
                "prompts_config": "prompts_json",
                "settings": "settings_json",
            }.get(key, key)
            if column.endswith("_json"):
                value = json_dumps(value or {})
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())
        params.append(context_id)
        self.conn.execute(
            "UPDATE contexts SET " + ", ".join(assignments) + " WHERE id = ?",
            tuple(params),
        )
        self.conn.commit()
        context = self.get(context_id)
        if context is None:
            raise KeyError(context_id)
        return context

    def upsert_by_slug(self, data: dict[str, Any]) -> Context:
        slug = slugify(str(data.get("slug") or data.get("name") or ""))
        existing = self.get_by_slug(slug)
        if existing is None:
            return self.create({**data, "slug": slug})
        payload = {key: value for key, value in data.items() if key in _EDITABLE}
        return self.update(existing.id, payload)

    def get(self, context_id: int) -> Context | None:
        row = self.conn.execute(_SELECT + " WHERE id = ?", (context_id,)).fetchone()
        return _row_to_context(row) if row else None

    def get_by_slug(self, slug: str) -> Context | None:
        row = self.conn.execute(_SELECT + " WHERE slug = ?", (slug,)).fetchone()
        return _row_to_context(row) if row else None

    def list_contexts(self, status: str | None = None) -> list[Context]:
        if status:
            rows = self.conn.execute(
                _SELECT + " WHERE status = ? ORDER BY priority DESC, id ASC", (status,)
            ).fetchall()
        else:
            rows = self.conn.execute(_SELECT + " ORDER BY priority DESC, id ASC").fetchall()
        return [_row_to_context(row) for row in rows]

    def list_active(self, today: date) -> list[Context]:
        return [
            context
            for context in self.list_contexts(status=CONTEXT_ACTIVE)
            if context.is_active(today)
        ]

    def delete(self, context_id: int) -> bool:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM content_queue WHERE context_id = ?", (context_id,)
        ).fetchone()
        if row and int(row[0]) > 0:
            raise ContextInUseError(
                f"context {context_id} is referenced by {int(row[0])} queue items"
            )
        cursor = self.conn.execute("DELETE FROM contexts WHERE id = ?", (context_id,))
        self.conn.commit()
        return cursor.rowcount == 1


def _normalize_context_data(data: dict[str, Any], require_name: bool) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key in _EDITABLE:
            values[key] = value
    if require_name and not str(values.get("name") or "").strip():
        raise ValueError("context name is required")
    if "name" in values:
        values["name"] = str(values["name"]).strip()
    if "type" in values and values["type"] not in CONTEXT_TYPES:
        raise ValueError(f"unknown context type: {values['type']}")
    if "status" in values and values["status"] not in CONTEXT_STATUSES:
        raise ValueError(f"unknown context status: {values['status']}")
    for key in ("priority", "daily_quota"):
        if key in values:
            values[key] = int(values[key])
    for key in ("date_start", "date_end"):
        if values.get(key):
            values[key] = str(date.fromisoformat(str(values[key])[:10]))
    for key in ("events", "prompts_config", "settings"):
        if key in values and values[key] is not None and not isinstance(values[key], dict):
            raise ValueError(f"{key} must be an object")
    return values


def _row_to_context(row) -> Context:
    data = dict(zip(_COLUMNS, row))
    return Context(
        id=int(data["id"]),
        slug=data["slug"],
        name=data["name"],
        type=data["type"],
        status=data["status"],
        priority=int(data["priority"]),
        daily_quota=int(data["daily_quota"]),
        date_start=data["date_start"],
        date_end=data["date_end"],
        events=_as_dict(json_loads(data["events_json"], {})),
        prompts_config=_as_dict(json_loads(data["prompts_json"], {})),
        settings=_as_dict(json_loads(data["settings_json"], {})),
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}
