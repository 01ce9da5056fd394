from __future__ import annotations

import json
import os
from typing import Any

from .db import DBConn, connect_db
from .utils import json_dumps, utc_now_iso

DEFAULT_DATA_DIR = "/data"


def get_state_db_path() -> str:
    data_dir = os.environ.get("CE_DATA_DIR", DEFAULT_DATA_DIR)
    return os.path.join(data_dir, "state.sqlite3")


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or get_state_db_path())


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()
