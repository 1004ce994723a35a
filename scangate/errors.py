from __future__ import annotations
"""
Error taxonomy shared by the station client and the sync engine.

    TRANSIENT  - network unreachable, timeouts, 5xx: worth retrying later
    REJECTION  - the intake answered and said no (limit reached, unknown ticket)
    VALIDATION - the scan itself is malformed; never enqueued, never retried
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    REJECTION = "rejection"
    VALIDATION = "validation"


class ScanGateError(Exception):
    """Base class for everything ScanGate raises on purpose."""


class ScanValidationError(ScanGateError, ValueError):
    """Raised at capture time when a scan payload cannot be submitted at all."""

    kind = ErrorKind.VALIDATION


class IntakeError(ScanGateError):
    """An intake round-trip did not produce an acknowledgment."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, status: Optional[int] = None,
                 payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status
        self.payload = payload or {}


class TransientIntakeError(IntakeError):
    kind = ErrorKind.TRANSIENT


class IntakeRejectedError(IntakeError):
    """
    The intake answered with a terminal refusal. `payload` carries the
    structured rejection (can_access/current_uses/max_uses/error_message).
    """

    def __init__(self, message: str, *, status: Optional[int] = None,
                 payload: Optional[Dict[str, Any]] = None,
                 kind: ErrorKind = ErrorKind.REJECTION):
        super().__init__(message, status=status, payload=payload)
        self.kind = kind

    @property
    def reason(self) -> str:
        return str(self.payload.get("reason") or self.kind.value)


def classify_status(status: int) -> ErrorKind:
    """
    Map a non-2xx HTTP status from the intake to an error kind.
    408/429 and every 5xx are worth another attempt; other 4xx are final.
    """
    if status in (408, 429) or status >= 500:
        return ErrorKind.TRANSIENT
    if status in (400, 422):
        return ErrorKind.VALIDATION
    return ErrorKind.REJECTION
