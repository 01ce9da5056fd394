from __future__ import annotations

import logging

from .utils import utc_now_iso

_STATEMENTS: list[tuple[str, list[str]]] = [
    (
        "pg_bootstrap_001",
        [
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS contexts (
                id BIGSERIAL PRIMARY KEY,
                slug TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'event_based',
                status TEXT NOT NULL DEFAULT 'active',
                priority INTEGER NOT NULL DEFAULT 5,
                daily_quota INTEGER NOT NULL DEFAULT 10,
                date_start TEXT NULL,
                date_end TEXT NULL,
                events_json TEXT NULL,
                prompts_json TEXT NULL,
                settings_json TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_contexts_status ON contexts(status)",
        ],
    ),
    (
        "pg_content_queue_002",
        [
            """
            CREATE TABLE IF NOT EXISTS content_queue (
                id BIGSERIAL PRIMARY KEY,
                context_id BIGINT NOT NULL DEFAULT 0,
                content_type TEXT NOT NULL,
                lang TEXT NOT NULL DEFAULT '',
                channel TEXT NOT NULL DEFAULT 'site',
                source_ref TEXT NULL,
                unique_key TEXT NOT NULL UNIQUE,
                priority INTEGER NOT NULL DEFAULT 5,
                status TEXT NOT NULL DEFAULT 'pending',
                scheduled_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_retry_at TEXT NULL,
                lock_token TEXT NULL,
                locked_at TEXT NULL,
                last_error TEXT NULL,
                post_id TEXT NULL,
                external_id TEXT NULL,
                parent_post_id TEXT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                cost DOUBLE PRECISION NOT NULL DEFAULT 0,
                result_json TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                processed_at TEXT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_queue_status_scheduled ON content_queue(status, scheduled_at)",
            "CREATE INDEX IF NOT EXISTS idx_queue_locked ON content_queue(lock_token, locked_at)",
            "CREATE INDEX IF NOT EXISTS idx_queue_context ON content_queue(context_id)",
        ],
    ),
    (
        "pg_activity_log_003",
        [
            """
            CREATE TABLE IF NOT EXISTS activity_log (
                id BIGSERIAL PRIMARY KEY,
                action TEXT NOT NULL,
                level TEXT NOT NULL DEFAULT 'info',
                queue_item_id BIGINT NULL,
                context_id BIGINT NULL,
                message TEXT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                cost DOUBLE PRECISION NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                data_json TEXT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log(created_at)",
        ],
    ),
]


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("contentengine.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, statements in _STATEMENTS:
            if version in applied:
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
