"""
usage_stats.py
--------------
Read-only views over control_usage for dashboards: the recent usage list and
the per-event counters (total, today, per control type, unique subjects).

These are the read models the station invalidates after a sync batch
("control_usage", "attendees"); they are plain reads and never take the write
lock, so they stay responsive while intakes are serializing.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def _connect(db_path: str | Path) -> sqlite3.Connection:
    cx = sqlite3.connect(str(db_path))
    cx.row_factory = sqlite3.Row
    return cx


def list_usage(
    db_path: str | Path,
    event_id: str,
    *,
    limit: int = 100,
    control_type_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Most recent usage rows for an event, newest first."""
    sql = "SELECT * FROM v_usage_enriched WHERE event_id=?"
    params: list[Any] = [event_id]
    if control_type_id and control_type_id != "all":
        sql += " AND control_type_id=?"
        params.append(control_type_id)
    sql += " ORDER BY used_at DESC, usage_id DESC LIMIT ?"
    params.append(max(1, int(limit)))

    with _connect(db_path) as db:
        return [dict(r) for r in db.execute(sql, params)]


def usage_stats(
    db_path: str | Path,
    event_id: str,
    *,
    control_type_id: Optional[str] = None,
    today: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Counters for the live dashboard.
    `today` is a YYYY-MM-DD prefix (UTC); defaults to the current UTC date.
    """
    day = today or datetime.now(timezone.utc).date().isoformat()
    where = "u.event_id=?"
    params: list[Any] = [event_id]
    if control_type_id and control_type_id != "all":
        where += " AND u.control_type_id=?"
        params.append(control_type_id)

    with _connect(db_path) as db:
        total = db.execute(f"SELECT COUNT(*) FROM control_usage u WHERE {where}", params).fetchone()[0]
        today_count = db.execute(
            f"SELECT COUNT(*) FROM control_usage u WHERE {where} AND substr(u.used_at, 1, 10)=?",
            (*params, day),
        ).fetchone()[0]
        unique_subjects = db.execute(
            f"""SELECT COUNT(DISTINCT COALESCE('a:' || u.attendee_id, 'c:' || u.numero_cedula))
                FROM control_usage u WHERE {where}""",
            params,
        ).fetchone()[0]
        by_control = [
            {"control_type_id": r["control_type_id"], "name": r["name"], "count": int(r["n"])}
            for r in db.execute(
                f"""SELECT u.control_type_id, ct.name, COUNT(*) AS n
                    FROM control_usage u
                    JOIN control_types ct ON ct.control_type_id = u.control_type_id
                    WHERE {where}
                    GROUP BY u.control_type_id, ct.name
                    ORDER BY n DESC, u.control_type_id""",
                params,
            )
        ]

    return {
        "event_id": event_id,
        "total": int(total or 0),
        "today": int(today_count or 0),
        "unique_subjects": int(unique_subjects or 0),
        "by_control": by_control,
    }
