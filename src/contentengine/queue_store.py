from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .models import (
    IN_FLIGHT_STATUSES,
    NewQueueItem,
    QueueItem,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_GENERATING,
    STATUS_LOCKED,
    STATUS_PERMANENT_FAILURE,
    STATUS_PROCESSING,
    STATUS_PUBLISHED,
    STATUS_REVIEW,
    STATUS_SKIPPED,
)
from .utils import isoformat_utc, json_dumps, json_loads, log_event, utc_now

_COLUMNS = (
    "id",
    "context_id",
    "content_type",
    "lang",
    "channel",
    "source_ref",
    "unique_key",
    "priority",
    "status",
    "scheduled_at",
    "attempts",
    "next_retry_at",
    "lock_token",
    "locked_at",
    "last_error",
    "post_id",
    "external_id",
    "parent_post_id",
    "tokens_used",
    "cost",
    "result_json",
    "created_at",
    "updated_at",
    "processed_at",
)
_SELECT = "SELECT " + ", ".join(_COLUMNS) + " FROM content_queue"

# Columns a caller may set through transition(); everything else is owned here.
_TRANSITION_FIELDS = {
    "last_error",
    "post_id",
    "external_id",
    "parent_post_id",
    "tokens_used",
    "cost",
    "result_json",
    "processed_at",
    "attempts",
    "next_retry_at",
}

_ELIGIBLE_WHERE = """
    lock_token IS NULL
    AND scheduled_at <= ?
    AND (
        (status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= ?))
        OR (status = 'failed' AND next_retry_at IS NOT NULL AND next_retry_at <= ?)
    )
"""

_LOCK_CANDIDATES = 5


class QueueStore:
    """Durable work queue with compare-and-swap ownership tokens.

    Every state change after acquisition goes through a conditional UPDATE
    that names the caller's token, so a worker that lost its lock (stale
    release, manual reset) can never overwrite another owner's progress.
    """

    def __init__(
        self,
        conn,
        clock: Callable[[], datetime] = utc_now,
        retry_base_minutes: int = 15,
        retry_max_minutes: int = 240,
        max_attempts: int = 5,
    ) -> None:
        self.conn = conn
        self.clock = clock
        self.retry_base_minutes = retry_base_minutes
        self.retry_max_minutes = retry_max_minutes
        self.max_attempts = max_attempts
        self.logger = logging.getLogger("contentengine.queue")

    def now_iso(self) -> str:
        return isoformat_utc(self.clock())

    # Inserts and reads

    def insert(self, item: NewQueueItem) -> int | None:
        now = self.now_iso()
        cursor = self.conn.execute(
            """
            INSERT INTO content_queue
                (context_id, content_type, lang, channel, source_ref, unique_key,
                 priority, status, scheduled_at, attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, 0, ?, ?)
            ON CONFLICT (unique_key) DO NOTHING
            RETURNING id
            """,
            (
                item.context_id,
                item.content_type,
                item.lang,
                item.channel,
                json_dumps(item.source_ref or {}),
                item.unique_key,
                item.priority,
                item.scheduled_at,
                now,
                now,
            ),
        )
        row = cursor.fetchone()
        self.conn.commit()
        if not row:
            log_event(
                self.logger,
                logging.DEBUG,
                "queue_insert_duplicate",
                unique_key=item.unique_key,
            )
            return None
        return int(row[0])

    def exists(self, unique_key: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM content_queue WHERE unique_key = ?", (unique_key,)
        ).fetchone()
        return row is not None

    def get(self, item_id: int) -> QueueItem | None:
        row = self.conn.execute(_SELECT + " WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None

    def get_by_unique_key(self, unique_key: str) -> QueueItem | None:
        row = self.conn.execute(
            _SELECT + " WHERE unique_key = ?", (unique_key,)
        ).fetchone()
        return _row_to_item(row) if row else None

    def list_items(
        self,
        status: str | None = None,
        context_id: int | None = None,
        content_type: str | None = None,
        channel: str | None = None,
        lang: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QueueItem]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("context_id", context_id),
            ("content_type", content_type),
            ("channel", channel),
            ("lang", lang),
        ):
            if value is None or value == "":
                continue
            clauses.append(f"{column} = ?")
            params.append(value)
        sql = _SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY scheduled_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        rows = self.conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_item(row) for row in rows]

    def status_counts(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT status, COUNT(*) FROM content_queue GROUP BY status"
        ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def count_eligible(self) -> int:
        now = self.now_iso()
        row = self.conn.execute(
            "SELECT COUNT(*) FROM content_queue WHERE " + _ELIGIBLE_WHERE,
            (now, now, now),
        ).fetchone()
        return int(row[0]) if row else 0

    def count_for_context(self, context_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM content_queue WHERE context_id = ?", (context_id,)
        ).fetchone()
        return int(row[0]) if row else 0

    # Lock acquisition

    def lock_next_eligible(self, exclude_ids: Iterable[int] = ()) -> QueueItem | None:
        """Atomically claim the next due item; the returned item carries its token.

        Eligibility is the hard criterion. Among eligible items the order is
        scheduled_at, then priority (high first) as a tie-break, then id.
        Candidates lost to another worker are skipped and the selection is
        repeated until an item is claimed or none is eligible.
        """
        now = self.now_iso()
        excluded = [int(item_id) for item_id in exclude_ids]
        while True:
            sql = "SELECT id FROM content_queue WHERE " + _ELIGIBLE_WHERE
            if excluded:
                sql += " AND id NOT IN (" + ", ".join("?" for _ in excluded) + ")"
            sql += " ORDER BY scheduled_at ASC, priority DESC, id ASC LIMIT ?"
            rows = self.conn.execute(sql, (now, now, now, *excluded, _LOCK_CANDIDATES)).fetchall()
            self.conn.commit()
            if not rows:
                return None
            for row in rows:
                item_id = int(row[0])
                if self._claim(item_id, now):
                    log_event(self.logger, logging.DEBUG, "queue_item_locked", item_id=item_id)
                    return self.get(item_id)
                excluded.append(item_id)

    def _claim(self, item_id: int, now: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE content_queue SET status = ?, lock_token = ?, locked_at = ?, updated_at = ? "
            "WHERE id = ? AND " + _ELIGIBLE_WHERE,
            (STATUS_LOCKED, _new_token(), now, now, item_id, now, now, now),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def try_lock_by_id(self, item_id: int) -> str | None:
        now = self.now_iso()
        token = _new_token()
        cursor = self.conn.execute(
            """
            UPDATE content_queue
            SET status = ?, lock_token = ?, locked_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'failed') AND lock_token IS NULL
            """,
            (STATUS_LOCKED, token, now, now, item_id),
        )
        self.conn.commit()
        if cursor.rowcount != 1:
            return None
        return token

    def release_lock(self, item_id: int, token: str) -> bool:
        """Give the item back untouched so a later pass can pick it up."""
        cursor = self.conn.execute(
            """
            UPDATE content_queue
            SET status = CASE WHEN attempts > 0 AND next_retry_at IS NOT NULL
                              THEN 'failed' ELSE 'pending' END,
                lock_token = NULL, locked_at = NULL, updated_at = ?
            WHERE id = ? AND lock_token = ?
            """,
            (self.now_iso(), item_id, token),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def release_stale_locks(self, timeout_minutes: int = 10) -> int:
        now = self.clock()
        cutoff = isoformat_utc(now - timedelta(minutes=timeout_minutes))
        placeholders = ", ".join("?" for _ in IN_FLIGHT_STATUSES)
        cursor = self.conn.execute(
            f"""
            UPDATE content_queue
            SET status = 'pending', lock_token = NULL, locked_at = NULL, updated_at = ?
            WHERE status IN ({placeholders})
              AND locked_at IS NOT NULL
              AND locked_at < ?
            """,
            (isoformat_utc(now), *IN_FLIGHT_STATUSES, cutoff),
        )
        self.conn.commit()
        released = max(cursor.rowcount, 0)
        if released:
            log_event(
                self.logger,
                logging.WARNING,
                "queue_stale_locks_released",
                count=released,
                timeout_minutes=timeout_minutes,
            )
        return released

    # Token-verified transitions

    def transition(
        self,
        item_id: int,
        token: str,
        status: str,
        clear_lock: bool = False,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"unsupported queue fields: {', '.join(sorted(unknown))}")
        now = self.now_iso()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, now]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        if clear_lock:
            assignments.append("lock_token = NULL")
            assignments.append("locked_at = NULL")
        params.extend([item_id, token])
        cursor = self.conn.execute(
            "UPDATE content_queue SET "
            + ", ".join(assignments)
            + " WHERE id = ? AND lock_token = ?",
            tuple(params),
        )
        self.conn.commit()
        if cursor.rowcount != 1:
            log_event(
                self.logger,
                logging.WARNING,
                "queue_lock_lost",
                item_id=item_id,
                status=status,
            )
            return False
        return True

    def mark_generating(self, item_id: int, token: str) -> bool:
        return self.transition(item_id, token, STATUS_GENERATING)

    def mark_processing(self, item_id: int, token: str) -> bool:
        return self.transition(item_id, token, STATUS_PROCESSING)

    def mark_completed(
        self,
        item_id: int,
        token: str,
        status: str = STATUS_PUBLISHED,
        post_id: str | None = None,
        tokens_used: int = 0,
        cost: float = 0.0,
        result: dict[str, Any] | None = None,
    ) -> bool:
        if status not in (STATUS_PUBLISHED, STATUS_REVIEW, STATUS_DONE):
            raise ValueError(f"not a completion status: {status}")
        return self.transition(
            item_id,
            token,
            status,
            clear_lock=True,
            post_id=post_id,
            tokens_used=int(tokens_used),
            cost=float(cost),
            result_json=json_dumps(result) if result is not None else None,
            last_error=None,
            next_retry_at=None,
            processed_at=self.now_iso(),
        )

    def mark_channel_completed(
        self,
        item_id: int,
        token: str,
        external_id: str | None,
        parent_post_id: str | None,
    ) -> bool:
        return self.transition(
            item_id,
            token,
            STATUS_PUBLISHED,
            clear_lock=True,
            external_id=external_id,
            parent_post_id=parent_post_id,
            last_error=None,
            next_retry_at=None,
            processed_at=self.now_iso(),
        )

    def mark_skipped(self, item_id: int, token: str, reason: str) -> bool:
        return self.transition(
            item_id,
            token,
            STATUS_SKIPPED,
            clear_lock=True,
            last_error=reason,
            next_retry_at=None,
            processed_at=self.now_iso(),
        )

    def mark_permanent_failure(self, item_id: int, token: str, error: str) -> bool:
        item = self.get(item_id)
        attempts = (item.attempts if item else 0) + 1
        return self.transition(
            item_id,
            token,
            STATUS_PERMANENT_FAILURE,
            clear_lock=True,
            attempts=attempts,
            last_error=error,
            next_retry_at=None,
            processed_at=self.now_iso(),
        )

    def mark_failed(
        self,
        item_id: int,
        token: str,
        error: str,
        max_attempts: int | None = None,
        retry_delay_seconds: int | None = None,
    ) -> str | None:
        """Record a failed attempt; returns the resulting status or None if the lock was lost."""
        item = self.get(item_id)
        if item is None or item.lock_token != token:
            log_event(self.logger, logging.WARNING, "queue_lock_lost", item_id=item_id, status=STATUS_FAILED)
            return None
        ceiling = max_attempts if max_attempts is not None else self.max_attempts
        attempts = item.attempts + 1
        if attempts >= ceiling:
            applied = self.transition(
                item_id,
                token,
                STATUS_PERMANENT_FAILURE,
                clear_lock=True,
                attempts=attempts,
                last_error=error,
                next_retry_at=None,
                processed_at=self.now_iso(),
            )
            return STATUS_PERMANENT_FAILURE if applied else None
        if retry_delay_seconds is not None and retry_delay_seconds > 0:
            delay = timedelta(seconds=retry_delay_seconds)
        else:
            delay = self.backoff_delay(attempts)
        next_retry_at = isoformat_utc(self.clock() + delay)
        applied = self.transition(
            item_id,
            token,
            STATUS_FAILED,
            clear_lock=True,
            attempts=attempts,
            last_error=error,
            next_retry_at=next_retry_at,
        )
        return STATUS_FAILED if applied else None

    def backoff_delay(self, attempts: int) -> timedelta:
        minutes = self.retry_base_minutes * (2 ** max(attempts - 1, 0))
        return timedelta(minutes=min(minutes, self.retry_max_minutes))

    # Operator actions

    def retry(self, item_id: int) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE content_queue
            SET status = 'pending', attempts = 0, last_error = NULL, next_retry_at = NULL,
                lock_token = NULL, locked_at = NULL, updated_at = ?
            WHERE id = ? AND status IN ('failed', 'permanent_failure') AND lock_token IS NULL
            """,
            (self.now_iso(), item_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def delete(self, item_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM content_queue WHERE id = ?", (item_id,))
        self.conn.commit()
        return cursor.rowcount == 1

    def delete_failed(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM content_queue WHERE status IN (?, ?)",
            (STATUS_FAILED, STATUS_PERMANENT_FAILURE),
        )
        self.conn.commit()
        return max(cursor.rowcount, 0)

    def purge_old(self, done_days: int = 30, failed_days: int = 60) -> int:
        now = self.clock()
        done_cutoff = isoformat_utc(now - timedelta(days=done_days))
        failed_cutoff = isoformat_utc(now - timedelta(days=failed_days))
        deleted = 0
        cursor = self.conn.execute(
            "DELETE FROM content_queue WHERE status IN (?, ?, ?) AND updated_at < ?",
            (STATUS_DONE, STATUS_PUBLISHED, STATUS_SKIPPED, done_cutoff),
        )
        deleted += max(cursor.rowcount, 0)
        cursor = self.conn.execute(
            "DELETE FROM content_queue WHERE status = ? AND updated_at < ?",
            (STATUS_PERMANENT_FAILURE, failed_cutoff),
        )
        deleted += max(cursor.rowcount, 0)
        self.conn.commit()
        if deleted:
            log_event(self.logger, logging.INFO, "queue_purged", deleted=deleted)
        return deleted


def _new_token() -> str:
    return secrets.token_hex(16)


def _row_to_item(row) -> QueueItem:
    data = dict(zip(_COLUMNS, row))
    source_ref = json_loads(data["source_ref"], {})
    if not isinstance(source_ref, dict):
        source_ref = {"value": source_ref}
    return QueueItem(
        id=int(data["id"]),
        context_id=int(data["context_id"] or 0),
        content_type=data["content_type"],
        lang=data["lang"] or "",
        channel=data["channel"],
        source_ref=source_ref,
        unique_key=data["unique_key"],
        priority=int(data["priority"]),
        status=data["status"],
        scheduled_at=data["scheduled_at"],
        attempts=int(data["attempts"] or 0),
        next_retry_at=data["next_retry_at"],
        lock_token=data["lock_token"],
        locked_at=data["locked_at"],
        last_error=data["last_error"],
        post_id=data["post_id"],
        external_id=data["external_id"],
        parent_post_id=data["parent_post_id"],
        tokens_used=int(data["tokens_used"] or 0),
        cost=float(data["cost"] or 0),
        result=json_loads(data["result_json"], None),
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        processed_at=data["processed_at"],
    )
