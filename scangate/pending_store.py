from __future__ import annotations
"""
scangate/pending_store.py
-------------------------
Durable queue of scans the intake has not acknowledged yet.

The queue itself is an in-memory list; every mutation re-persists the *whole*
list through a QueueStorage port before returning, so a crash loses at most the
scan being added. An empty queue deletes the persisted entry instead of writing
an empty array.

Storage ports
  - SqliteQueueStorage : one row (key 'pending_scans') in a local SQLite file,
                         value = JSON array of PendingScan (camelCase)
  - MemoryQueueStorage : in-process stand-in for tests
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from .models import PendingScan

STORAGE_KEY = "pending_scans"
MAX_RETRIES = 5

log = logging.getLogger("scangate.store")


class QueueStorage(Protocol):
    def load(self) -> Optional[str]:
        """Return the persisted JSON text, or None when nothing is stored."""
        ...

    def save(self, text: Optional[str]) -> None:
        """Persist JSON text; None removes the entry."""
        ...


class MemoryQueueStorage:
    def __init__(self, text: Optional[str] = None):
        self.text = text
        self.saves = 0

    def load(self) -> Optional[str]:
        return self.text

    def save(self, text: Optional[str]) -> None:
        self.saves += 1
        self.text = text


class SqliteQueueStorage:
    """
    Key-value table in a station-local SQLite file. Each save is one committed
    transaction, so a reader after a crash sees either the old or the new queue.
    """

    KV_DDL = "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"

    def __init__(self, path: str | Path, key: str = STORAGE_KEY):
        self.path = Path(path)
        self.key = key
        self.path.parent.mkdir(parents=True, exist_ok=True)
        con = self._connect()
        try:
            with con:
                con.execute(self.KV_DDL)
        finally:
            con.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path))

    def load(self) -> Optional[str]:
        con = self._connect()
        try:
            row = con.execute("SELECT value FROM kv WHERE key=?", (self.key,)).fetchone()
        finally:
            con.close()
        return row[0] if row else None

    def save(self, text: Optional[str]) -> None:
        con = self._connect()
        try:
            with con:
                if text is None:
                    con.execute("DELETE FROM kv WHERE key=?", (self.key,))
                else:
                    con.execute(
                        "INSERT INTO kv(key, value) VALUES(?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                        (self.key, text),
                    )
        finally:
            con.close()


class PendingScanStore:
    def __init__(self, storage: QueueStorage, *, max_retries: int = MAX_RETRIES):
        self.storage = storage
        self.max_retries = int(max_retries)
        self._lock = threading.RLock()
        self._scans: List[PendingScan] = self._restore()

    # ---- persistence ----------------------------------------------------
    def _restore(self) -> List[PendingScan]:
        text = self.storage.load()
        if not text:
            return []
        try:
            items = json.loads(text)
            if not isinstance(items, list):
                raise ValueError(f"expected a JSON array, got {type(items).__name__}")
            scans = [PendingScan.from_dict(d) for d in items]
        except (ValueError, KeyError, TypeError) as ex:
            log.error("pending_queue_corrupt", extra={"err": str(ex)})
            self.storage.save(None)
            return []
        log.info("pending_queue_restored", extra={"count": len(scans)})
        return scans

    def _persist_locked(self) -> None:
        if self._scans:
            self.storage.save(json.dumps([s.to_dict() for s in self._scans]))
        else:
            self.storage.save(None)

    # ---- queries -------------------------------------------------------
    def __len__(self) -> int:
        with self._lock:
            return len(self._scans)

    def snapshot(self) -> List[PendingScan]:
        """Copy of the queue in FIFO order; later mutations don't affect it."""
        with self._lock:
            return [PendingScan(**vars(s)) for s in self._scans]

    def ids(self) -> List[str]:
        with self._lock:
            return [s.id for s in self._scans]

    # ---- mutations -----------------------------------------------------
    def enqueue(self, scan: PendingScan) -> PendingScan:
        with self._lock:
            scan.retry_count = 0
            self._scans.append(scan)
            self._persist_locked()
        log.info("scan_queued", extra={"scan_id": scan.id, "subject": scan.subject, "pending": len(self)})
        return scan

    def drain_succeeded(self, ids: Iterable[str]) -> List[PendingScan]:
        """Remove acknowledged scans; returns the removed entries."""
        return self._remove(set(ids))

    def discard(self, ids: Iterable[str]) -> List[PendingScan]:
        """Remove scans the intake refused for good; returns the removed entries."""
        return self._remove(set(ids))

    def bump_retry(self, ids: Iterable[str]) -> List[PendingScan]:
        """
        Count one more failed attempt for each id. Scans that reach the retry
        ceiling leave the queue and are returned so the caller can report them.
        """
        wanted = set(ids)
        if not wanted:
            return []
        exhausted: List[PendingScan] = []
        with self._lock:
            keep: List[PendingScan] = []
            for s in self._scans:
                if s.id in wanted:
                    s.retry_count += 1
                    if s.retry_count >= self.max_retries:
                        exhausted.append(s)
                        continue
                keep.append(s)
            self._scans = keep
            self._persist_locked()
        for s in exhausted:
            log.warning("scan_retry_exhausted", extra={"scan_id": s.id, "subject": s.subject,
                                                       "retry_count": s.retry_count})
        return exhausted

    def _remove(self, wanted: set[str]) -> List[PendingScan]:
        if not wanted:
            return []
        with self._lock:
            removed = [s for s in self._scans if s.id in wanted]
            if not removed:
                return []
            self._scans = [s for s in self._scans if s.id not in wanted]
            self._persist_locked()
        return removed
