from __future__ import annotations
"""
scangate/sync_engine.py
-----------------------
Drives the pending-scan store to empty whenever the intake is reachable.

One pass (sync):
  - snapshot the queue (FIFO)
  - replay each scan through the intake client, device label tagged
    " (Offline Sync)", idempotency key = the scan's client id
  - classify every outcome
        acknowledged (incl. duplicate)  -> drain_succeeded
        rejection / validation          -> discard   (terminal, no retry budget spent)
        transient                       -> bump_retry (ceiling -> dropped + reported)
  - after the batch: one invalidation signal for the affected read models and
    one summary notification

sync() is reentrant-safe: a call made while a pass is in flight returns None
immediately, so overlapping triggers never submit the same scan twice.

drain() repeats passes with exponential backoff (doubling, capped) while
transient failures remain and the station still believes it is online. Every
pass spends one retry per failing scan, so drain() always terminates.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .errors import IntakeRejectedError, TransientIntakeError
from .intake_client import IntakeClient
from .models import PendingScan, SyncReport
from .pending_store import PendingScanStore
from .signals import (
    DROPPED,
    READ_MODEL_ATTENDEES,
    READ_MODEL_USAGE,
    REJECTED,
    RETRY,
    SYNCED,
    InvalidationBus,
    Notifier,
)

log = logging.getLogger("scangate.sync")


class SyncEngine:
    def __init__(
        self,
        store: PendingScanStore,
        client: IntakeClient,
        *,
        notifier: Optional[Notifier] = None,
        invalidation: Optional[InvalidationBus] = None,
        on_reachability: Optional[Callable[[bool], None]] = None,
        backoff_base_s: float = 1.0,
        backoff_max_s: float = 30.0,
    ):
        self.store = store
        self.client = client
        self.notifier = notifier or Notifier()
        self.invalidation = invalidation or InvalidationBus()
        self._on_reachability = on_reachability
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_max_s = float(backoff_max_s)
        self._syncing = False

        self.passes = 0
        self.skipped = 0

    @property
    def syncing(self) -> bool:
        return self._syncing

    def _reachable(self, ok: bool) -> None:
        if self._on_reachability is not None:
            self._on_reachability(ok)

    async def sync(self) -> Optional[SyncReport]:
        if self._syncing:
            self.skipped += 1
            log.debug("sync_skipped_in_flight")
            return None
        # No await between the check above and this assignment: single event loop.
        self._syncing = True
        try:
            return await self._pass()
        finally:
            self._syncing = False

    async def _pass(self) -> SyncReport:
        batch = self.store.snapshot()
        report = SyncReport()
        if not batch:
            return report

        self.passes += 1
        log.info("sync_start", extra={"pending": len(batch)})

        ok: List[PendingScan] = []
        refused: List[Tuple[PendingScan, IntakeRejectedError]] = []
        failed: List[PendingScan] = []

        for scan in batch:
            try:
                await self.client.submit(scan.intake_payload(replay=True))
            except IntakeRejectedError as e:
                self._reachable(True)
                refused.append((scan, e))
            except TransientIntakeError as e:
                # status None: the request never reached a server
                self._reachable(e.status is not None)
                failed.append(scan)
                log.warning("sync_scan_failed", extra={"scan_id": scan.id, "status": e.status, "err": str(e)})
            except Exception:
                log.exception("sync_scan_crashed", extra={"scan_id": scan.id})
                failed.append(scan)
            else:
                self._reachable(True)
                ok.append(scan)

        report.synced = self.store.drain_succeeded(s.id for s in ok)
        report.rejected = self.store.discard(s.id for s, _ in refused)
        report.dropped = self.store.bump_retry(s.id for s in failed)

        dropped_ids = {s.id for s in report.dropped}
        remaining = {s.id: s for s in self.store.snapshot()}
        report.retried = [remaining[s.id] for s in failed if s.id not in dropped_ids and s.id in remaining]

        for scan, err in refused:
            self.notifier.notify(
                REJECTED,
                f"Scan rejected: {scan.subject} - {err}",
                ticket_id=scan.subject, scan_id=scan.id, reason=err.reason, status=err.status,
            )
        for scan in report.retried:
            self.notifier.notify(
                RETRY,
                f"Sync failed for {scan.subject}; will retry ({scan.retry_count}/{self.store.max_retries})",
                ticket_id=scan.subject, scan_id=scan.id, retry_count=scan.retry_count,
            )
        for scan in report.dropped:
            self.notifier.notify(
                DROPPED,
                f"Scan discarded: {scan.subject} - too many retries",
                ticket_id=scan.subject, scan_id=scan.id, retry_count=scan.retry_count,
            )

        if report.synced:
            self.invalidation.publish((READ_MODEL_ATTENDEES, READ_MODEL_USAGE))
            self.notifier.notify(
                SYNCED,
                f"{len(report.synced)} scans saved on the server",
                count=len(report.synced),
            )

        log.info(
            "sync_done",
            extra={
                "synced": len(report.synced),
                "rejected": len(report.rejected),
                "retried": len(report.retried),
                "dropped": len(report.dropped),
                "pending": len(self.store),
            },
        )
        return report

    async def drain(self, is_online: Callable[[], bool] = lambda: True) -> List[SyncReport]:
        """Repeat sync passes with backoff until nothing transient is left (or we go offline)."""
        reports: List[SyncReport] = []
        backoff = self.backoff_base_s
        while True:
            report = await self.sync()
            if report is None:
                break
            reports.append(report)
            if not report.retried or not is_online() or not len(self.store):
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2.0, self.backoff_max_s)
        return reports
