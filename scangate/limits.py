from __future__ import annotations
"""
scangate/limits.py
------------------
Control-limit evaluation: may this subject be credited with one more use of a
control type?

    can_access = max_uses is NULL  or  current_uses < max_uses

Policy for a (category, control type) pair with no category_controls row:
permit and report max_uses=0 with "no limit configured" (fail-open). Cedula
subjects may instead get a strict default from limits.cedula_default_max_uses.

These helpers never open or commit a transaction. The intake calls them on a
connection that already holds the write lock (BEGIN IMMEDIATE), so the count
they read cannot change before the usage row is inserted.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiosqlite

from .models import LimitDecision

NO_LIMIT_MESSAGE = "no limit configured"


@dataclass
class Subject:
    """Who is being scanned: a ticket holder (attendee) or a whitelisted cedula."""
    kind: str                       # 'ticket' | 'cedula'
    event_id: str
    category_id: Optional[str]
    attendee_id: Optional[str] = None
    numero_cedula: Optional[str] = None
    ticket_id: Optional[str] = None
    name: Optional[str] = None
    status: str = "valid"

    def where(self) -> Tuple[str, tuple]:
        """SQL predicate selecting this subject's rows in control_usage."""
        if self.kind == "ticket":
            return "attendee_id=?", (self.attendee_id,)
        return "event_id=? AND numero_cedula=?", (self.event_id, self.numero_cedula)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.attendee_id,
            "name": self.name,
            "ticket_id": self.ticket_id,
            "cedula": self.numero_cedula,
            "category": self.category_id,
        }


async def count_uses(db: aiosqlite.Connection, subject: Subject, control_type_id: str) -> int:
    pred, params = subject.where()
    cur = await db.execute(
        f"SELECT COUNT(*) FROM control_usage WHERE {pred} AND control_type_id=?",
        (*params, control_type_id),
    )
    row = await cur.fetchone()
    await cur.close()
    return int(row[0] if row and row[0] is not None else 0)


async def last_usage(db: aiosqlite.Connection, subject: Subject, control_type_id: str) -> Optional[Dict[str, Any]]:
    """Most recent usage of this control by the subject, for 'already used at ...' displays."""
    pred, params = subject.where()
    cur = await db.execute(
        f"""SELECT used_at, device FROM control_usage
            WHERE {pred} AND control_type_id=?
            ORDER BY used_at DESC, usage_id DESC LIMIT 1""",
        (*params, control_type_id),
    )
    row = await cur.fetchone()
    await cur.close()
    if not row:
        return None
    return {"used_at": row["used_at"], "device": row["device"]}


async def find_limit(
    db: aiosqlite.Connection, category_id: Optional[str], control_type_id: str
) -> Tuple[bool, Optional[int]]:
    """Return (configured, max_uses). max_uses None on a configured row means unlimited."""
    if not category_id:
        return False, None
    cur = await db.execute(
        "SELECT max_uses FROM category_controls WHERE category_id=? AND control_type_id=?",
        (category_id, control_type_id),
    )
    row = await cur.fetchone()
    await cur.close()
    if row is None:
        return False, None
    return True, (None if row[0] is None else int(row[0]))


def decide(current_uses: int, configured: bool, max_uses: Optional[int],
           *, default_max_uses: int = 0) -> LimitDecision:
    """Pure decision step, kept separate so the policy table is testable without SQLite."""
    if not configured:
        if default_max_uses > 0:
            configured, max_uses = True, default_max_uses
        else:
            return LimitDecision(True, current_uses, 0, NO_LIMIT_MESSAGE)

    if max_uses is None:
        return LimitDecision(True, current_uses, None, f"unlimited ({current_uses} used)")

    if current_uses < max_uses:
        return LimitDecision(True, current_uses, max_uses,
                             f"access granted ({current_uses}/{max_uses})")
    return LimitDecision(False, current_uses, max_uses,
                         f"limit reached ({current_uses}/{max_uses})")


async def evaluate(
    db: aiosqlite.Connection,
    subject: Subject,
    control_type_id: str,
    *,
    cedula_default_max_uses: int = 0,
) -> LimitDecision:
    configured, max_uses = await find_limit(db, subject.category_id, control_type_id)
    current = await count_uses(db, subject, control_type_id)
    default_max = cedula_default_max_uses if subject.kind == "cedula" else 0
    return decide(current, configured, max_uses, default_max_uses=default_max)
