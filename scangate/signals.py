from __future__ import annotations
"""
User-visible notifications and read-model invalidation for the station.

Every queue transition produces a distinct notification kind so operators can
audit what happened to each scan:

    queued     scan stored locally (offline or transient failure)
    synced     batch summary after a sync pass with successes
    rejected   a queued scan was refused by the intake; removed, not retried
    retry      a queued scan failed transiently and stays queued
    dropped    retry budget exhausted; scan removed for good
    online     connectivity restored
    offline    connectivity lost; scans will be stored locally
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Tuple

QUEUED = "queued"
SYNCED = "synced"
REJECTED = "rejected"
RETRY = "retry"
DROPPED = "dropped"
ONLINE = "online"
OFFLINE = "offline"

# Read models the dashboards cache and must refresh after a batch lands.
READ_MODEL_ATTENDEES = "attendees"
READ_MODEL_USAGE = "control_usage"

_LEVELS = {
    QUEUED: logging.INFO,
    SYNCED: logging.INFO,
    ONLINE: logging.INFO,
    RETRY: logging.WARNING,
    OFFLINE: logging.WARNING,
    REJECTED: logging.WARNING,
    DROPPED: logging.ERROR,
}


@dataclass
class Notification:
    kind: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)


class Notifier:
    """Default notifier: one structured log line per notification."""

    def __init__(self, logger_name: str = "scangate.notify"):
        self._log = logging.getLogger(logger_name)

    def notify(self, kind: str, message: str, **fields: Any) -> None:
        self._log.log(_LEVELS.get(kind, logging.INFO), message, extra={"kind": kind, **fields})


class RecordingNotifier(Notifier):
    """Keeps every notification in memory (status panels, tests)."""

    def __init__(self, logger_name: str = "scangate.notify"):
        super().__init__(logger_name)
        self.items: List[Notification] = []

    def notify(self, kind: str, message: str, **fields: Any) -> None:
        self.items.append(Notification(kind, message, dict(fields)))
        super().notify(kind, message, **fields)

    def of_kind(self, kind: str) -> List[Notification]:
        return [n for n in self.items if n.kind == kind]


class InvalidationBus:
    """
    Fan-out of 'refresh these read models' signals.
    Subscribers receive one call per batch carrying every affected read model.
    """

    def __init__(self) -> None:
        self._subscribers: List[Callable[[Tuple[str, ...]], None]] = []
        self._log = logging.getLogger("scangate.signals")

    def subscribe(self, callback: Callable[[Tuple[str, ...]], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, topics: Iterable[str]) -> None:
        batch = tuple(dict.fromkeys(topics))
        if not batch:
            return
        for cb in list(self._subscribers):
            try:
                cb(batch)
            except Exception:
                # A broken view cache must not undo a sync that already landed.
                self._log.exception("invalidation_subscriber_failed", extra={"topics": batch})
