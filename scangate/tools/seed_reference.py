"""
Seed demo reference data into the ScanGate SQLite DB.

Why this exists:
- The intake only reads events / categories / control types / attendees; an
  empty DB rejects every scan with ticket_not_found.
- Fresh installs and tests need a known event to scan against.
- This is safe to re-run: INSERT OR REPLACE keeps IDs stable. Usage rows are
  never touched.

Demo event 'evt-demo':
  categories     cat-general, cat-vip
  control types  entrance, bar (requires entrance), vip_lounge (requires entrance),
                 merch (no limit row: fail-open)
  limits         general: entrance 1, bar 3 | vip: entrance 1, bar unlimited, vip_lounge 2
  tickets        TKT-0001..TKT-0003 valid, TKT-0004 blocked, TKT-9001 (other event)
  cedulas        1712345678 (cat-general), 0912345678 (no category)

Usage:
  (.venv) python -m scangate.tools.seed_reference [--db path/to.sqlite] [--recreate]
"""
from __future__ import annotations

import argparse
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Tuple

from scangate.db_schema import ensure_schema

DEMO: Dict[str, List[Tuple[Any, ...]]] = {
    # event_id, name, date_utc, status
    "events": [
        ("evt-demo", "Demo Night", "2026-10-24", "active"),
        ("evt-other", "Other Show", "2026-11-07", "active"),
    ],
    # category_id, event_id, name
    "ticket_categories": [
        ("cat-general", "evt-demo", "General"),
        ("cat-vip", "evt-demo", "VIP"),
        ("cat-other", "evt-other", "General"),
    ],
    # control_type_id, event_id, name, requires_control_id
    "control_types": [
        ("entrance", "evt-demo", "Entrance", None),
        ("bar", "evt-demo", "Bar", "entrance"),
        ("vip_lounge", "evt-demo", "VIP Lounge", "entrance"),
        ("merch", "evt-demo", "Merch", None),
        ("other_entrance", "evt-other", "Entrance", None),
    ],
    # category_id, control_type_id, max_uses (None = unlimited)
    "category_controls": [
        ("cat-general", "entrance", 1),
        ("cat-general", "bar", 3),
        ("cat-vip", "entrance", 1),
        ("cat-vip", "bar", None),
        ("cat-vip", "vip_lounge", 2),
        ("cat-other", "other_entrance", 1),
    ],
    # attendee_id, event_id, ticket_id, name, cedula, category_id, status
    "attendees": [
        ("att-001", "evt-demo", "TKT-0001", "Ana Torres", None, "cat-general", "valid"),
        ("att-002", "evt-demo", "TKT-0002", "Bruno Vega", None, "cat-vip", "valid"),
        ("att-003", "evt-demo", "TKT-0003", "Carla Mena", None, "cat-general", "valid"),
        ("att-004", "evt-demo", "TKT-0004", "Diego Sol", None, "cat-general", "blocked"),
        ("att-901", "evt-other", "TKT-9001", "Olga Ruiz", None, "cat-other", "valid"),
    ],
    # event_id, numero_cedula, nombre_completo, category_id
    "cedulas_autorizadas": [
        ("evt-demo", "1712345678", "Elena Paz", "cat-general"),
        ("evt-demo", "0912345678", "Fabian Ruiz", None),
    ],
}

_COLUMNS = {
    "events": "(event_id, name, date_utc, status)",
    "ticket_categories": "(category_id, event_id, name)",
    "control_types": "(control_type_id, event_id, name, requires_control_id)",
    "category_controls": "(category_id, control_type_id, max_uses)",
    "attendees": "(attendee_id, event_id, ticket_id, name, cedula, category_id, status)",
    "cedulas_autorizadas": "(event_id, numero_cedula, nombre_completo, category_id)",
}


def seed(db_path: str | Path, data: Dict[str, List[Tuple[Any, ...]]] = DEMO, *, recreate: bool = False) -> Dict[str, int]:
    """Ensure the schema, upsert reference rows, return row counts per table."""
    ensure_schema(db_path, recreate=recreate)
    counts: Dict[str, int] = {}
    # Plain connection: FKs stay off so REPLACE never cascades into control_usage.
    conn = sqlite3.connect(str(db_path))
    try:
        with conn:
            for table, cols in _COLUMNS.items():
                rows = data.get(table) or []
                if not rows:
                    continue
                marks = ", ".join("?" * len(rows[0]))
                conn.executemany(f"INSERT OR REPLACE INTO {table} {cols} VALUES ({marks})", rows)
                counts[table] = len(rows)
    finally:
        conn.close()
    return counts


def main(argv=None) -> None:
    ap = argparse.ArgumentParser(description="Seed ScanGate demo reference data")
    ap.add_argument("--db", help="SQLite path (default: app.server.persistence.sqlite_path)")
    ap.add_argument("--recreate", action="store_true", help="Drop and rebuild every table first")
    args = ap.parse_args(argv)

    if args.db:
        db = Path(args.db)
    else:
        from scangate.config_loader import get_db_path
        db = get_db_path()

    counts = seed(db, recreate=args.recreate)
    print(f"Seeded reference data into {db}: " + ", ".join(f"{t}={n}" for t, n in counts.items()))


if __name__ == "__main__":
    main()
