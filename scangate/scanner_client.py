"""
ScanGate - Scanning Station
===========================

Purpose
-------
Read ticket / cedula scans from an input source, de-duplicate repeated reads,
and record each one with the scan intake. When the intake cannot be reached the
scan is stored in the local pending-scan queue and replayed later by the sync
engine, so a gate keeps working through network drops.

Flow
----
    Reader -> de-dup window -> ScannerStation.capture()
        online, acknowledged        -> done (access granted)
        online, refused             -> done (access denied, never queued)
        transient failure / offline -> PendingScanStore.enqueue + "queued" notification

    ConnectivityMonitor (fed by transport outcomes, and by /healthz pings while offline)
        offline -> online           -> one tracked sync task (SyncEngine.drain)
        online  -> offline          -> "offline" notification

Input sources (station.reader.source)
-------------------------------------
    * stdin : one scan per line (handheld scanners act as keyboards).
              "cedula:<number>" records a whitelist scan, anything else a ticket id.
    * mock  : synthetic ticket ids at intervals (for testing end-to-end)

Publishing modes (publisher.mode)
---------------------------------
    * http      : POST /scans/intake on the ScanGate server
    * inprocess : call ScanIntake directly against the configured SQLite file

CLI
---
    python -m scangate.scanner_client --config /path/to/config.yaml
    # Optional runtime overrides:
    --source stdin|mock
    --mode http|inprocess
    --event evt-demo
    --control entrance
    --device "Gate A"
    --offline          start in the offline state
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Set

from . import config_loader as _config_module
from .config_loader import get_db_path, get_limits_cfg, get_log_level, get_publisher_cfg, get_station_cfg
from .connectivity import ConnectivityMonitor
from .db_schema import ensure_schema
from .errors import IntakeRejectedError, TransientIntakeError
from .intake import ScanIntake
from .intake_client import HttpIntakeClient, InProcessIntakeClient, IntakeClient
from .models import PendingScan, SyncReport
from .pending_store import MAX_RETRIES, PendingScanStore, SqliteQueueStorage
from .signals import OFFLINE, ONLINE, QUEUED, InvalidationBus, Notifier
from .sync_engine import SyncEngine

CEDULA_PREFIX = "cedula:"

ACCEPTED = "accepted"
REJECTED = "rejected"
QUEUED_LOCALLY = "queued"


class DedupWindow:
    """
    De-duplicate reads within a sliding window. Simple in-memory cache:
    code -> last_seen_epoch_seconds.
    """
    def __init__(self, window_sec: float):
        self.window = float(window_sec)
        self._last = {}  # type: dict[str, float]

    def accept(self, code: str) -> bool:
        now = time.time()
        last = self._last.get(code)
        if last is not None and now - last < self.window:
            return False
        self._last[code] = now
        return True


@dataclass
class CaptureResult:
    """What happened to one captured scan, from the operator's point of view."""
    status: str                               # accepted | rejected | queued
    scan: PendingScan
    body: Optional[Dict[str, Any]] = None     # intake response (success or rejection)
    error: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.status == ACCEPTED


# ------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------
class ScannerStation:
    """
    Wires: capture -> immediate intake -> queue on failure, and
    connectivity monitor -> sync engine.
    """
    def __init__(
        self,
        *,
        store: PendingScanStore,
        client: IntakeClient,
        event_id: str,
        control_type_id: str,
        device: str = "Scanner",
        notifier: Optional[Notifier] = None,
        invalidation: Optional[InvalidationBus] = None,
        initial_online: bool = True,
        backoff_base_s: float = 1.0,
    ):
        self.store = store
        self.client = client
        self.event_id = event_id
        self.control_type_id = control_type_id
        self.device = device
        self.notifier = notifier or Notifier()
        self.invalidation = invalidation or InvalidationBus()
        self.log = logging.getLogger("scangate.station")

        self.monitor = ConnectivityMonitor(
            initial_online,
            on_online=self._on_online,
            on_offline=self._on_offline,
        )
        self.engine = SyncEngine(
            store,
            client,
            notifier=self.notifier,
            invalidation=self.invalidation,
            on_reachability=self.monitor.set_online,
            backoff_base_s=backoff_base_s,
        )
        self._tasks: Set[asyncio.Task] = set()

        # Observability counters
        self.captured_total = 0
        self.accepted_total = 0
        self.rejected_total = 0
        self.queued_total = 0

    # ---- task tracking ---------------------------------------------------
    def _track_task(self, task: asyncio.Task) -> None:
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.log.error("sync_task_failed", exc_info=exc)

        task.add_done_callback(_done)

    def schedule_sync(self) -> Optional[asyncio.Task]:
        """Start a drain in the background unless one is already running."""
        if self.engine.syncing or self._tasks or not len(self.store):
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.log.warning("sync_not_scheduled_no_loop")
            return None
        task = loop.create_task(self.engine.drain(lambda: self.monitor.online), name="scangate_sync")
        self._track_task(task)
        return task

    async def wait_idle(self) -> None:
        """Wait until every background sync task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- connectivity callbacks ----------------------------------------------
    def _on_online(self) -> None:
        self.notifier.notify(ONLINE, "Connection restored", pending=len(self.store))
        self.schedule_sync()

    def _on_offline(self) -> None:
        self.notifier.notify(OFFLINE, "Connection lost; scans will be stored locally",
                             pending=len(self.store))

    # ---- capture ---------------------------------------------------------
    async def capture(
        self,
        *,
        ticket_id: Optional[str] = None,
        cedula: Optional[str] = None,
        control_type_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> CaptureResult:
        """
        Record one scan. Raises ScanValidationError for unusable input
        (nothing is queued); otherwise returns a CaptureResult.
        """
        scan = PendingScan.capture(
            ticket_id=ticket_id,
            cedula=cedula,
            control_type_id=control_type_id or self.control_type_id,
            event_id=event_id or self.event_id,
            device=self.device,
        )
        self.captured_total += 1

        if not self.monitor.online:
            return self._queue(scan, "offline")

        try:
            body = await self.client.submit(scan.intake_payload())
        except IntakeRejectedError as e:
            self.monitor.set_online(True)
            self.rejected_total += 1
            self.log.info("scan_rejected", extra={"scan_id": scan.id, "subject": scan.subject,
                                                  "reason": e.reason, "status": e.status})
            return CaptureResult(REJECTED, scan, body=e.payload, error=str(e))
        except TransientIntakeError as e:
            self.monitor.set_online(e.status is not None)
            return self._queue(scan, str(e))

        self.monitor.set_online(True)
        self.accepted_total += 1
        # The intake answered; anything still queued can go now.
        self.schedule_sync()
        return CaptureResult(ACCEPTED, scan, body=body)

    def _queue(self, scan: PendingScan, why: str) -> CaptureResult:
        self.store.enqueue(scan)
        self.queued_total += 1
        self.notifier.notify(
            QUEUED,
            f"Scan stored locally: {scan.subject}; will sync when the connection returns",
            ticket_id=scan.subject, scan_id=scan.id, pending=len(self.store),
        )
        return CaptureResult(QUEUED_LOCALLY, scan, error=why)

    # ---- control -----------------------------------------------------------
    async def check_connectivity(self) -> bool:
        """
        Offline: ping the intake; an answer flips the monitor online, which
        starts a sync. Online with scans still queued: start a sync.
        """
        if not self.monitor.online:
            self.monitor.set_online(await self.client.ping())
        elif len(self.store):
            self.schedule_sync()
        return self.monitor.online

    async def sync_now(self) -> Optional[SyncReport]:
        """Manual sync button: one pass, or None when a pass is already running."""
        return await self.engine.sync()

    def status(self) -> Dict[str, Any]:
        return {
            "online": self.monitor.online,
            "pending": len(self.store),
            "syncing": self.engine.syncing,
        }

    async def start(self) -> None:
        await self.client.start()
        # Scans persisted before a restart go out as soon as we can.
        if self.monitor.online:
            self.schedule_sync()

    async def stop(self) -> None:
        await self.wait_idle()
        await self.client.stop()


# ------------------------------------------------------------
# Readers (async)
# ------------------------------------------------------------
class Reader(ABC):
    @abstractmethod
    def codes(self) -> AsyncIterator[str]:
        """Return an async-iterable stream of raw scanned strings."""
        raise NotImplementedError


class StdinReader(Reader):
    async def codes(self) -> AsyncIterator[str]:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                return
            line = line.strip()
            if line:
                yield line


class MockReader(Reader):
    def __init__(self, interval_s: float = 3.0, prefix: str = "TKT-"):
        self.interval_s = float(interval_s)
        self.prefix = prefix

    async def codes(self) -> AsyncIterator[str]:
        i = 0
        while True:
            i += 1
            yield f"{self.prefix}{i:04d}"
            await asyncio.sleep(self.interval_s)


def parse_code(raw: str) -> Dict[str, str]:
    """Map one raw read to capture() keyword arguments."""
    txt = raw.strip()
    if txt.lower().startswith(CEDULA_PREFIX):
        return {"cedula": txt[len(CEDULA_PREFIX):].strip()}
    return {"ticket_id": txt}


# ------------------------------------------------------------
# Wiring from config
# ------------------------------------------------------------
def build_client(pub: Dict[str, Any]) -> IntakeClient:
    mode = str(pub.get("mode", "http")).lower()
    if mode == "inprocess":
        db_path = get_db_path()
        ensure_schema(db_path)
        limits = get_limits_cfg()
        return InProcessIntakeClient(
            ScanIntake(db_path, cedula_default_max_uses=int(limits.get("cedula_default_max_uses", 0) or 0))
        )
    if mode == "http":
        http_cfg = pub.get("http", {}) or {}
        return HttpIntakeClient(
            http_cfg.get("base_url", "http://127.0.0.1:8000"),
            timeout_ms=int(http_cfg.get("timeout_ms", 5000)),
        )
    raise ValueError(f"Unknown publisher.mode: {mode}")


def build_reader(reader_cfg: Dict[str, Any]) -> Reader:
    source = str(reader_cfg.get("source", "stdin")).lower()
    if source == "stdin":
        return StdinReader()
    if source == "mock":
        return MockReader(float(reader_cfg.get("interval_s", 3.0)))
    raise ValueError(f"Unknown station.reader.source: {source}")


class ScannerService:
    """
    Wires: Reader -> de-dup -> ScannerStation, plus a heartbeat log line.
    """
    def __init__(self, station: ScannerStation, reader: Reader, *,
                 dup_window_s: float = 3.0, heartbeat_s: float = 10.0, reconnect_s: float = 5.0):
        self.station = station
        self.reader = reader
        self.dup_window_s = float(dup_window_s)
        self.heartbeat_s = float(heartbeat_s)
        self.reconnect_s = float(reconnect_s)
        self._dups = DedupWindow(self.dup_window_s)
        self.log = logging.getLogger("scangate.station")

        self.reads_total = 0
        self.suppressed_total = 0
        self.invalid_total = 0

    async def handle(self, raw: str) -> Optional[CaptureResult]:
        self.reads_total += 1
        code = raw.strip()
        if not self._dups.accept(code):
            self.suppressed_total += 1
            self.log.info("suppressed", extra={"code": code, "window_s": self.dup_window_s})
            return None

        t0 = time.perf_counter()
        try:
            result = await self.station.capture(**parse_code(code))
        except ValueError as e:
            self.invalid_total += 1
            self.log.warning("invalid_scan", extra={"code": code, "err": str(e)})
            return None

        self.log.info(
            "scan_event",
            extra={
                "code": code,
                "result": result.status,
                "pending": len(self.station.store),
                "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
            },
        )
        return result

    async def run(self, stop_evt: asyncio.Event) -> None:
        await self.station.start()
        self.log.info("station_start", extra={**self.station.status(),
                                              "event_id": self.station.event_id,
                                              "control_type_id": self.station.control_type_id})
        hb_task = asyncio.create_task(self._heartbeat(), name="station_heartbeat")
        watch_task = asyncio.create_task(self._watch_connectivity(), name="station_connectivity")
        try:
            async for raw in self.reader.codes():
                if stop_evt.is_set():
                    break
                await self.handle(raw)
        except asyncio.CancelledError:
            stop_evt.set()
            self.log.info("station_run_cancelled")
        finally:
            for t in (hb_task, watch_task):
                t.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await t
            await self.station.stop()
            self.log.info("station_stop", extra=self._counters())

    def _counters(self) -> Dict[str, Any]:
        st = self.station
        return {
            "reads": self.reads_total,
            "suppressed": self.suppressed_total,
            "invalid": self.invalid_total,
            "accepted": st.accepted_total,
            "rejected": st.rejected_total,
            "queued": st.queued_total,
            **st.status(),
        }

    async def _watch_connectivity(self) -> None:
        """Network-status source: ping the intake every reconnect_s while offline."""
        while True:
            await asyncio.sleep(self.reconnect_s)
            try:
                await self.station.check_connectivity()
            except Exception:
                self.log.exception("connectivity_check_failed")

    async def _heartbeat(self) -> None:
        """Periodic log line so ops can see counters move."""
        while True:
            await asyncio.sleep(self.heartbeat_s)
            payload = self._counters()
            if isinstance(self.station.client, HttpIntakeClient):
                payload.update({
                    "send_attempts": self.station.client.send_attempts,
                    "sent": self.station.client.sent_ok,
                    "failed": self.station.client.sent_failed,
                })
            self.log.info("heartbeat", extra=payload)


def build_service(args: argparse.Namespace) -> ScannerService:
    sc = get_station_cfg()
    pub = dict(get_publisher_cfg())
    if args.mode:
        pub["mode"] = args.mode
    reader_cfg = dict(sc.get("reader", {}) or {})
    if args.source:
        reader_cfg["source"] = args.source

    queue_path = sc.get("queue_path") or str(_config_module.PROJECT_ROOT / "data" / "station_queue.sqlite")
    store = PendingScanStore(SqliteQueueStorage(queue_path),
                             max_retries=int(sc.get("max_retries", MAX_RETRIES)))

    station = ScannerStation(
        store=store,
        client=build_client(pub),
        event_id=args.event or str(sc.get("event_id", "")),
        control_type_id=args.control or str(sc.get("control_type_id", "")),
        device=args.device or str(sc.get("device", "Scanner")),
        initial_online=not args.offline,
    )
    return ScannerService(
        station,
        build_reader(reader_cfg),
        dup_window_s=float(reader_cfg.get("duplicate_window_sec", 3)),
        heartbeat_s=float(sc.get("heartbeat_s", 10)),
        reconnect_s=float(sc.get("reconnect_s", 5)),
    )


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------
def _parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="ScanGate scanning station")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--source", choices=["stdin", "mock"], help="Override station.reader.source")
    ap.add_argument("--mode", choices=["http", "inprocess"], help="Override publisher.mode")
    ap.add_argument("--event", help="Override station.event_id")
    ap.add_argument("--control", help="Override station.control_type_id")
    ap.add_argument("--device", help="Override station.device")
    ap.add_argument("--offline", action="store_true", help="Start in the offline state")
    return ap.parse_args(argv)


async def _amain(argv=None) -> None:
    args = _parse_args(argv)

    if args.config:
        # ensure helper accessors read the same config
        _config_module.CONFIG = _config_module.load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop_evt = asyncio.Event()
    svc = build_service(args)
    task = asyncio.create_task(svc.run(stop_evt))
    try:
        await task
    except KeyboardInterrupt:
        stop_evt.set()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def main(argv=None) -> None:
    asyncio.run(_amain(argv))


if __name__ == "__main__":
    main()
