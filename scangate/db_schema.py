from __future__ import annotations

"""
scangate/db_schema.py
---------------------
Centralized, idempotent SQLite schema management for ScanGate.

Design goals
- Reference data (events, ticket categories, control types, category limits,
  attendees, cedula whitelist) is owned by admin configuration; the intake only
  reads it.
- control_usage is the single authoritative usage log for both ticket and
  cedula subjects. Rows are append-only; the only delete path is the cascade
  from attendees.
- client_scan_id carries the station's PendingScan id. A partial UNIQUE index
  makes a second delivery of the same scan detectable inside the intake
  transaction.
- Keep schema creation safe to call at every boot (idempotent).

IMPORTANT:
SQLite only enforces FOREIGN KEY constraints when 'PRAGMA foreign_keys=ON' is set
on the connection performing writes. connect_async() below does that.
"""

import sqlite3
from pathlib import Path

import aiosqlite

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 2

# ------------------------
# DDL: Event & catalog reference data
# ------------------------
EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    event_id    TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    date_utc    TEXT,                       -- ISO8601 (YYYY-MM-DD or full timestamp)
    status      TEXT NOT NULL DEFAULT 'active' -- 'draft' | 'active' | 'finished'
);
"""

CATALOG_DDL = """
CREATE TABLE IF NOT EXISTS ticket_categories (
    category_id TEXT PRIMARY KEY,
    event_id    TEXT NOT NULL,
    name        TEXT NOT NULL,
    FOREIGN KEY (event_id) REFERENCES events(event_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_categories_event ON ticket_categories(event_id);

-- Access points with their own usage accounting ('entrance', 'bar', ...).
CREATE TABLE IF NOT EXISTS control_types (
    control_type_id     TEXT PRIMARY KEY,
    event_id            TEXT NOT NULL,
    name                TEXT NOT NULL,
    requires_control_id TEXT,           -- prerequisite control the subject must have used first
    FOREIGN KEY (event_id) REFERENCES events(event_id) ON DELETE CASCADE,
    FOREIGN KEY (requires_control_id) REFERENCES control_types(control_type_id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_control_types_event ON control_types(event_id);

-- Per-category quota. max_uses NULL = unlimited; a missing row = not configured.
CREATE TABLE IF NOT EXISTS category_controls (
    category_id     TEXT NOT NULL,
    control_type_id TEXT NOT NULL,
    max_uses        INTEGER,
    PRIMARY KEY (category_id, control_type_id),
    FOREIGN KEY (category_id)     REFERENCES ticket_categories(category_id) ON DELETE CASCADE,
    FOREIGN KEY (control_type_id) REFERENCES control_types(control_type_id) ON DELETE CASCADE
);
"""

# ------------------------
# DDL: Subjects (ticket holders, whitelisted cedulas)
# ------------------------
SUBJECTS_DDL = """
CREATE TABLE IF NOT EXISTS attendees (
    attendee_id TEXT PRIMARY KEY,
    event_id    TEXT NOT NULL,
    ticket_id   TEXT NOT NULL,              -- value encoded in the QR code
    name        TEXT NOT NULL,
    cedula      TEXT,
    category_id TEXT,
    status      TEXT NOT NULL DEFAULT 'valid', -- 'valid' | 'used' | 'blocked'
    FOREIGN KEY (event_id)    REFERENCES events(event_id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES ticket_categories(category_id) ON DELETE SET NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_attendees_ticket ON attendees(ticket_id);
CREATE INDEX IF NOT EXISTS idx_attendees_event ON attendees(event_id);

CREATE TABLE IF NOT EXISTS cedulas_autorizadas (
    event_id        TEXT NOT NULL,
    numero_cedula   TEXT NOT NULL,
    nombre_completo TEXT,
    category_id     TEXT,
    PRIMARY KEY (event_id, numero_cedula),
    FOREIGN KEY (event_id)    REFERENCES events(event_id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES ticket_categories(category_id) ON DELETE SET NULL
);
"""

# ------------------------
# DDL: Authoritative usage log
# ------------------------
USAGE_DDL = """
CREATE TABLE IF NOT EXISTS control_usage (
    usage_id        INTEGER PRIMARY KEY,
    event_id        TEXT NOT NULL,
    attendee_id     TEXT,                   -- ticket subject
    numero_cedula   TEXT,                   -- cedula subject
    control_type_id TEXT NOT NULL,
    used_at         TEXT NOT NULL,          -- ISO8601 UTC when credited
    device          TEXT,
    notes           TEXT,
    client_scan_id  TEXT,                   -- station PendingScan id (idempotency key)
    FOREIGN KEY (event_id)        REFERENCES events(event_id) ON DELETE CASCADE,
    FOREIGN KEY (attendee_id)     REFERENCES attendees(attendee_id) ON DELETE CASCADE,
    FOREIGN KEY (control_type_id) REFERENCES control_types(control_type_id) ON DELETE CASCADE,
    CHECK ((attendee_id IS NULL) != (numero_cedula IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_client_scan
ON control_usage(client_scan_id)
WHERE client_scan_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_usage_attendee_control ON control_usage(attendee_id, control_type_id);
CREATE INDEX IF NOT EXISTS idx_usage_cedula_control ON control_usage(event_id, numero_cedula, control_type_id);
CREATE INDEX IF NOT EXISTS idx_usage_event_time ON control_usage(event_id, used_at);
"""

# ------------------------
# DDL: Convenience views (for UI-friendly reads)
# ------------------------
VIEWS_DDL = """
-- Usage joined to human-friendly labels.
CREATE VIEW IF NOT EXISTS v_usage_enriched AS
SELECT
  u.usage_id,
  u.event_id,
  u.attendee_id,
  a.ticket_id,
  COALESCE(a.name, c.nombre_completo) AS subject_name,
  u.numero_cedula,
  u.control_type_id,
  ct.name AS control_name,
  u.used_at,
  u.device,
  u.notes,
  u.client_scan_id
FROM control_usage u
JOIN control_types ct ON ct.control_type_id = u.control_type_id
LEFT JOIN attendees a ON a.attendee_id = u.attendee_id
LEFT JOIN cedulas_autorizadas c
       ON c.event_id = u.event_id AND c.numero_cedula = u.numero_cedula;
"""


# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()


def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    # Views first (they depend on tables), then children before parents.
    cur.execute("DROP VIEW IF EXISTS v_usage_enriched")
    cur.execute("DROP TABLE IF EXISTS control_usage")
    cur.execute("DROP TABLE IF EXISTS cedulas_autorizadas")
    cur.execute("DROP TABLE IF EXISTS attendees")
    cur.execute("DROP TABLE IF EXISTS category_controls")
    cur.execute("DROP TABLE IF EXISTS control_types")
    cur.execute("DROP TABLE IF EXISTS ticket_categories")
    cur.execute("DROP TABLE IF EXISTS events")
    conn.commit()


def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, EVENTS_DDL)
        _exec_script(conn, CATALOG_DDL)
        _exec_script(conn, SUBJECTS_DDL)
        _exec_script(conn, USAGE_DDL)
        _exec_script(conn, VIEWS_DDL)

        # WAL lets dashboards read while an intake holds the write lock.
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()


async def connect_async(db_path: str | Path) -> aiosqlite.Connection:
    """
    Open an aiosqlite connection configured for intake work:
    explicit transactions (isolation_level=None), FK enforcement, Row factory,
    and a busy timeout so concurrent BEGIN IMMEDIATE callers queue instead of failing.
    """
    db = await aiosqlite.connect(str(db_path), timeout=30.0, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys=ON")
    await db.execute("PRAGMA busy_timeout=30000")
    return db
