from __future__ import annotations

from datetime import timedelta
from typing import Any

from .utils import isoformat_utc, json_dumps, json_loads, utc_now, utc_now_iso


def record_activity(
    conn,
    action: str,
    message: str = "",
    level: str = "info",
    queue_item_id: int | None = None,
    context_id: int | None = None,
    tokens_used: int = 0,
    cost: float = 0.0,
    duration_ms: int = 0,
    data: dict[str, Any] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO activity_log
            (action, level, queue_item_id, context_id, message, tokens_used, cost,
             duration_ms, data_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            action,
            level,
            queue_item_id,
            context_id,
            message,
            int(tokens_used),
            float(cost),
            int(duration_ms),
            json_dumps(data) if data else None,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_activity(
    conn, limit: int = 50, queue_item_id: int | None = None
) -> list[dict[str, Any]]:
    sql = (
        "SELECT id, action, level, queue_item_id, context_id, message, tokens_used, cost, "
        "duration_ms, data_json, created_at FROM activity_log"
    )
    params: list[Any] = []
    if queue_item_id is not None:
        sql += " WHERE queue_item_id = ?"
        params.append(queue_item_id)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(int(limit))
    rows = conn.execute(sql, tuple(params)).fetchall()
    return [
        {
            "id": row[0],
            "action": row[1],
            "level": row[2],
            "queue_item_id": row[3],
            "context_id": row[4],
            "message": row[5] or "",
            "tokens_used": int(row[6] or 0),
            "cost": float(row[7] or 0),
            "duration_ms": int(row[8] or 0),
            "data": json_loads(row[9], {}),
            "created_at": row[10],
        }
        for row in rows
    ]


def activity_totals(conn, days: int = 30) -> dict[str, Any]:
    since = isoformat_utc(utc_now() - timedelta(days=days))
    row = conn.execute(
        """
        SELECT COUNT(*), COALESCE(SUM(tokens_used), 0), COALESCE(SUM(cost), 0)
        FROM activity_log
        WHERE created_at >= ?
        """,
        (since,),
    ).fetchone()
    return {
        "days": days,
        "entries": int(row[0]),
        "tokens_used": int(row[1]),
        "cost": round(float(row[2]), 6),
    }


def purge_activity(conn, days: int = 30) -> int:
    cutoff = isoformat_utc(utc_now() - timedelta(days=days))
    cursor = conn.execute("DELETE FROM activity_log WHERE created_at < ?", (cutoff,))
    conn.commit()
    return max(cursor.rowcount, 0)
