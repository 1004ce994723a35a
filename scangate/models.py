from __future__ import annotations
"""
Plain data carried between the station, the sync engine and the intake.

PendingScan is persisted by the station in camelCase JSON (the `pending_scans`
entry); everything else is in-process only and turned into JSON by to_payload().
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ScanValidationError

# Appended to the device label when a queued scan is replayed, so audit trails
# can tell offline-recorded entries apart.
SYNC_DEVICE_SUFFIX = " (Offline Sync)"

UTC_MS = lambda: int(time.time() * 1000)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass
class PendingScan:
    id: str
    control_type_id: str
    event_id: str
    device: str
    timestamp: int
    ticket_id: Optional[str] = None
    cedula: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def capture(
        cls,
        *,
        control_type_id: Any,
        event_id: Any,
        device: Any = "",
        ticket_id: Any = None,
        cedula: Any = None,
        now_ms: Optional[int] = None,
    ) -> "PendingScan":
        """
        Build a scan at capture time: fresh client id, client clock, retry 0.
        Raises ScanValidationError for payloads the intake could never accept,
        so they fail fast instead of sitting in the queue.
        """
        ticket = _clean(ticket_id)
        ced = _clean(cedula)
        if bool(ticket) == bool(ced):
            raise ScanValidationError("exactly one of ticket_id or cedula is required")
        ctype = _clean(control_type_id)
        if not ctype:
            raise ScanValidationError("control_type_id is required")
        event = _clean(event_id)
        if not event:
            raise ScanValidationError("event_id is required")

        return cls(
            id=str(uuid.uuid4()),
            control_type_id=ctype,
            event_id=event,
            device=_clean(device) or "Scanner",
            timestamp=int(now_ms if now_ms is not None else UTC_MS()),
            ticket_id=ticket,
            cedula=ced,
        )

    @property
    def subject(self) -> str:
        """Ticket id, or the cedula number for whitelist scans."""
        return self.ticket_id or self.cedula or ""

    def intake_payload(self, *, replay: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "controlTypeId": self.control_type_id,
            "eventId": self.event_id,
            "device": self.device + (SYNC_DEVICE_SUFFIX if replay else ""),
            "clientScanId": self.id,
            "timestamp": self.timestamp,
        }
        if self.ticket_id:
            payload["ticketId"] = self.ticket_id
        else:
            payload["cedula"] = self.cedula
        return payload

    # ---- persistence shape (camelCase, like the browser queue it replaces) ----
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticketId": self.ticket_id,
            "cedula": self.cedula,
            "controlTypeId": self.control_type_id,
            "eventId": self.event_id,
            "device": self.device,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingScan":
        return cls(
            id=str(d["id"]),
            ticket_id=d.get("ticketId"),
            cedula=d.get("cedula"),
            control_type_id=str(d["controlTypeId"]),
            event_id=str(d["eventId"]),
            device=str(d.get("device") or ""),
            timestamp=int(d.get("timestamp") or 0),
            retry_count=int(d.get("retryCount") or 0),
        )


@dataclass
class ScanRequest:
    """One logical scan as received by the intake."""
    control_type_id: str
    event_id: str
    ticket_id: Optional[str] = None
    cedula: Optional[str] = None
    device: Optional[str] = None
    client_scan_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class LimitDecision:
    can_access: bool
    current_uses: int
    max_uses: Optional[int]     # None = unlimited; 0 = no limit configured
    error_message: str


@dataclass
class IntakeOutcome:
    """
    Result of one intake call. Denials are outcomes, not exceptions:
    `accepted` is False and `reason` says why.
    """
    accepted: bool
    reason: str
    status_code: int
    message: str
    current_uses: int = 0
    max_uses: Optional[int] = 0
    usage: Optional[Dict[str, Any]] = None
    duplicate: bool = False
    last_usage: Optional[Dict[str, Any]] = None
    attendee: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        if self.accepted:
            return {
                "success": True,
                "can_access": True,
                "usage": self.usage,
                "current_uses": self.current_uses,
                "max_uses": self.max_uses,
                "duplicate": self.duplicate,
                "attendee": self.attendee,
                "message": self.message,
            }
        return {
            "success": False,
            "can_access": False,
            "reason": self.reason,
            "current_uses": self.current_uses,
            "max_uses": self.max_uses,
            "error_message": self.message,
            "last_usage": self.last_usage,
            "attendee": self.attendee,
        }


@dataclass
class SyncReport:
    synced: List[PendingScan] = field(default_factory=list)
    rejected: List[PendingScan] = field(default_factory=list)
    retried: List[PendingScan] = field(default_factory=list)
    dropped: List[PendingScan] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.synced) + len(self.rejected) + len(self.retried) + len(self.dropped)
