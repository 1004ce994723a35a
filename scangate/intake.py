from __future__ import annotations
"""
scangate/intake.py
------------------
The authoritative write path: one logical scan in, one IntakeOutcome out.

Every call runs inside a single SQLite transaction opened with BEGIN IMMEDIATE,
which takes the database write lock *before* anything is read. Two stations
scanning the same ticket at the same instant therefore serialize here: the
second one counts the first one's row and cannot overshoot max_uses.

Order of checks
  1. client_scan_id already recorded      -> success, duplicate=True, no new row
  2. subject (ticket or cedula) resolves  -> else rejection
  3. control type belongs to the event    -> else rejection
  4. prerequisite control already used    -> else rejection
  5. limit evaluation (scangate.limits)   -> else rejection with uses + last usage
  6. insert control_usage, COMMIT
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite

from .db_schema import connect_async
from .limits import Subject, count_uses, decide, evaluate, find_limit, last_usage
from .models import IntakeOutcome, ScanRequest

log = logging.getLogger("scangate.intake")

DEFAULT_NOTES = "Scanner - intake"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _usage_dict(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "usage_id": int(row["usage_id"]),
        "event_id": row["event_id"],
        "attendee_id": row["attendee_id"],
        "numero_cedula": row["numero_cedula"],
        "control_type_id": row["control_type_id"],
        "used_at": row["used_at"],
        "device": row["device"],
        "notes": row["notes"],
        "client_scan_id": row["client_scan_id"],
    }


def _reject(reason: str, status_code: int, message: str, **kw: Any) -> IntakeOutcome:
    return IntakeOutcome(accepted=False, reason=reason, status_code=status_code, message=message, **kw)


async def _fetch_one(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    row = await cur.fetchone()
    await cur.close()
    return row


class ScanIntake:
    def __init__(self, db_path: str | Path, *, cedula_default_max_uses: int = 0,
                 notes: str = DEFAULT_NOTES):
        self.db_path = Path(db_path)
        self.cedula_default_max_uses = int(cedula_default_max_uses or 0)
        self.notes = notes

    async def process(self, req: ScanRequest) -> IntakeOutcome:
        db = await connect_async(self.db_path)
        try:
            await db.execute("BEGIN IMMEDIATE")
            try:
                outcome = await self._process_locked(db, req)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            # Only a fresh acceptance wrote anything; everything else releases the lock.
            await db.execute("COMMIT" if outcome.accepted and not outcome.duplicate else "ROLLBACK")
        finally:
            await db.close()

        log.info(
            "[INTAKE] subject=%s control=%s event=%s accepted=%s reason=%s uses=%s/%s scan_id=%s",
            req.ticket_id or req.cedula,
            req.control_type_id,
            req.event_id,
            outcome.accepted,
            outcome.reason,
            outcome.current_uses,
            outcome.max_uses,
            req.client_scan_id or "-",
        )
        return outcome

    # ------------------------------------------------------------------
    # Steps (all run with the write lock held)
    # ------------------------------------------------------------------
    async def _process_locked(self, db: aiosqlite.Connection, req: ScanRequest) -> IntakeOutcome:
        if req.client_scan_id:
            dup = await _fetch_one(db, "SELECT * FROM control_usage WHERE client_scan_id=?",
                                   (req.client_scan_id,))
            if dup is not None:
                return await self._duplicate(db, dup)

        subject_or_reject = await self._resolve_subject(db, req)
        if isinstance(subject_or_reject, IntakeOutcome):
            return subject_or_reject
        subject = subject_or_reject

        ctype = await _fetch_one(
            db,
            "SELECT control_type_id, name, requires_control_id FROM control_types "
            "WHERE control_type_id=? AND event_id=?",
            (req.control_type_id, req.event_id),
        )
        if ctype is None:
            return _reject("control_type_not_found", 404,
                           f"control type {req.control_type_id!r} not found for this event",
                           attendee=subject.as_dict())

        required = ctype["requires_control_id"]
        if required and await count_uses(db, subject, required) == 0:
            req_row = await _fetch_one(db, "SELECT name FROM control_types WHERE control_type_id=?", (required,))
            label = req_row["name"] if req_row else required
            return _reject("prerequisite_missing", 403, f"requires prior {label} control",
                           attendee=subject.as_dict())

        decision = await evaluate(db, subject, req.control_type_id,
                                  cedula_default_max_uses=self.cedula_default_max_uses)
        if not decision.can_access:
            return _reject(
                "limit_reached", 403, decision.error_message,
                current_uses=decision.current_uses,
                max_uses=decision.max_uses,
                last_usage=await last_usage(db, subject, req.control_type_id),
                attendee=subject.as_dict(),
            )

        cur = await db.execute(
            """INSERT INTO control_usage
                 (event_id, attendee_id, numero_cedula, control_type_id, used_at, device, notes, client_scan_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                subject.event_id,
                subject.attendee_id,
                subject.numero_cedula,
                req.control_type_id,
                _now_iso(),
                req.device or "Scanner",
                req.notes or self.notes,
                req.client_scan_id,
            ),
        )
        usage_id = cur.lastrowid
        await cur.close()
        row = await _fetch_one(db, "SELECT * FROM control_usage WHERE usage_id=?", (usage_id,))

        return IntakeOutcome(
            accepted=True,
            reason="accepted",
            status_code=200,
            message=decision.error_message,
            current_uses=decision.current_uses + 1,
            max_uses=decision.max_uses,
            usage=_usage_dict(row),
            attendee=subject.as_dict(),
        )

    async def _resolve_subject(self, db: aiosqlite.Connection, req: ScanRequest) -> Subject | IntakeOutcome:
        if req.ticket_id:
            row = await _fetch_one(
                db,
                "SELECT attendee_id, event_id, ticket_id, name, category_id, status "
                "FROM attendees WHERE ticket_id=?",
                (req.ticket_id,),
            )
            if row is None:
                return _reject("ticket_not_found", 404, f"ticket {req.ticket_id!r} not found")
            subject = Subject(
                kind="ticket",
                event_id=row["event_id"],
                category_id=row["category_id"],
                attendee_id=row["attendee_id"],
                ticket_id=row["ticket_id"],
                name=row["name"],
                status=str(row["status"] or "valid"),
            )
            if subject.event_id != req.event_id:
                return _reject("event_mismatch", 403, "ticket belongs to another event",
                               attendee=subject.as_dict())
            if subject.status == "blocked":
                return _reject("attendee_blocked", 403, "ticket is blocked",
                               attendee=subject.as_dict())
            return subject

        row = await _fetch_one(
            db,
            "SELECT event_id, numero_cedula, nombre_completo, category_id "
            "FROM cedulas_autorizadas WHERE event_id=? AND numero_cedula=?",
            (req.event_id, req.cedula),
        )
        if row is None:
            return _reject("cedula_not_authorized", 403, f"cedula {req.cedula!r} is not on the whitelist")
        return Subject(
            kind="cedula",
            event_id=row["event_id"],
            category_id=row["category_id"],
            numero_cedula=row["numero_cedula"],
            name=row["nombre_completo"],
        )

    async def _duplicate(self, db: aiosqlite.Connection, dup: aiosqlite.Row) -> IntakeOutcome:
        """Second delivery of an already-recorded scan: acknowledge it, write nothing."""
        category_id = None
        name = ticket_id = None
        if dup["attendee_id"] is not None:
            a = await _fetch_one(db, "SELECT ticket_id, name, category_id FROM attendees WHERE attendee_id=?",
                                 (dup["attendee_id"],))
            if a is not None:
                category_id, name, ticket_id = a["category_id"], a["name"], a["ticket_id"]
            subject = Subject("ticket", dup["event_id"], category_id, attendee_id=dup["attendee_id"],
                              ticket_id=ticket_id, name=name)
            default_max = 0
        else:
            c = await _fetch_one(
                db,
                "SELECT nombre_completo, category_id FROM cedulas_autorizadas WHERE event_id=? AND numero_cedula=?",
                (dup["event_id"], dup["numero_cedula"]),
            )
            if c is not None:
                category_id, name = c["category_id"], c["nombre_completo"]
            subject = Subject("cedula", dup["event_id"], category_id,
                              numero_cedula=dup["numero_cedula"], name=name)
            default_max = self.cedula_default_max_uses

        configured, max_uses = await find_limit(db, category_id, dup["control_type_id"])
        current = await count_uses(db, subject, dup["control_type_id"])
        report = decide(current, configured, max_uses, default_max_uses=default_max)
        return IntakeOutcome(
            accepted=True,
            reason="duplicate",
            status_code=200,
            message="scan already recorded",
            current_uses=current,
            max_uses=report.max_uses,
            usage=_usage_dict(dup),
            duplicate=True,
            attendee=subject.as_dict(),
        )
