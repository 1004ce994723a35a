import asyncio

import httpx
import pytest

from scangate.errors import ScanValidationError
from scangate.intake import ScanIntake
from scangate.intake_client import HttpIntakeClient, InProcessIntakeClient
from scangate.models import SYNC_DEVICE_SUFFIX
from scangate.pending_store import MemoryQueueStorage, PendingScanStore, SqliteQueueStorage
from scangate.scanner_client import (
    ACCEPTED,
    QUEUED_LOCALLY,
    REJECTED,
    DedupWindow,
    MockReader,
    ScannerService,
    ScannerStation,
    parse_code,
)
from scangate.server import create_app
from scangate.signals import OFFLINE, ONLINE, QUEUED, SYNCED, InvalidationBus, RecordingNotifier


def _station(client, *, online=True, storage=None):
    notifier = RecordingNotifier()
    bus = InvalidationBus()
    published = []
    bus.subscribe(published.append)
    station = ScannerStation(
        store=PendingScanStore(storage or MemoryQueueStorage()),
        client=client,
        event_id="evt-demo",
        control_type_id="entrance",
        device="Gate A",
        notifier=notifier,
        invalidation=bus,
        initial_online=online,
        backoff_base_s=0.0,
    )
    return station, notifier, published


def test_online_scan_goes_straight_to_intake(db_path, rows):
    station, notifier, _ = _station(InProcessIntakeClient(ScanIntake(db_path)))

    async def go():
        return await station.capture(ticket_id="TKT-0001")

    result = asyncio.run(go())
    assert result.status == ACCEPTED
    assert result.granted
    assert result.body["success"] is True
    assert len(station.store) == 0
    assert rows(db_path)[0]["device"] == "Gate A"
    assert notifier.of_kind(QUEUED) == []


def test_denied_scan_is_not_queued(db_path):
    station, _, _ = _station(InProcessIntakeClient(ScanIntake(db_path)))

    async def go():
        return await station.capture(ticket_id="TKT-0004")

    result = asyncio.run(go())
    assert result.status == REJECTED
    assert result.body["reason"] == "attendee_blocked"
    assert len(station.store) == 0
    assert station.rejected_total == 1


def test_invalid_scan_raises_and_is_not_queued(db_path):
    station, _, _ = _station(InProcessIntakeClient(ScanIntake(db_path)))
    with pytest.raises(ScanValidationError):
        asyncio.run(station.capture())
    assert len(station.store) == 0


def test_offline_scans_sync_when_connection_returns(db_path, rows):
    station, notifier, published = _station(InProcessIntakeClient(ScanIntake(db_path)), online=False)

    async def go():
        for ticket in ("TKT-0001", "TKT-0002", "TKT-0003"):
            result = await station.capture(ticket_id=ticket)
            assert result.status == QUEUED_LOCALLY
        assert station.status() == {"online": False, "pending": 3, "syncing": False}

        station.monitor.set_online(True)
        station.monitor.set_online(True)
        await station.wait_idle()

    asyncio.run(go())
    assert len(station.store) == 0
    recorded = rows(db_path)
    assert len(recorded) == 3
    assert all(r["device"].endswith(SYNC_DEVICE_SUFFIX) for r in recorded)
    assert published == [("attendees", "control_usage")]
    assert len(notifier.of_kind(QUEUED)) == 3
    assert len(notifier.of_kind(ONLINE)) == 1
    assert len(notifier.of_kind(SYNCED)) == 1


def test_transport_failure_queues_and_goes_offline():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    client = HttpIntakeClient("http://intake.local", transport=httpx.MockTransport(handler))
    station, notifier, _ = _station(client)

    async def go():
        try:
            first = await station.capture(ticket_id="TKT-0001")
            second = await station.capture(ticket_id="TKT-0002")
        finally:
            await client.stop()
        return first, second

    first, second = asyncio.run(go())
    assert first.status == second.status == QUEUED_LOCALLY
    assert station.monitor.online is False
    assert len(station.store) == 2
    assert len(notifier.of_kind(OFFLINE)) == 1
    # Offline captures skip the network entirely.
    assert client.send_attempts == 1


def test_server_error_queues_but_stays_online():
    client = HttpIntakeClient("http://intake.local",
                              transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    station, notifier, _ = _station(client)

    async def go():
        try:
            return await station.capture(ticket_id="TKT-0001")
        finally:
            await client.stop()

    result = asyncio.run(go())
    assert result.status == QUEUED_LOCALLY
    assert station.monitor.online is True
    assert notifier.of_kind(OFFLINE) == []


def test_queue_from_previous_run_is_replayed_on_start(db_path, tmp_path, rows):
    queue = tmp_path / "station_queue.sqlite"
    offline, _, _ = _station(InProcessIntakeClient(ScanIntake(db_path)), online=False,
                             storage=SqliteQueueStorage(queue))
    asyncio.run(offline.capture(ticket_id="TKT-0002"))

    restarted, _, published = _station(InProcessIntakeClient(ScanIntake(db_path)),
                                       storage=SqliteQueueStorage(queue))
    assert len(restarted.store) == 1

    async def go():
        await restarted.start()
        await restarted.stop()

    asyncio.run(go())
    assert len(restarted.store) == 0
    assert len(rows(db_path)) == 1
    assert published == [("attendees", "control_usage")]


def test_parse_code():
    assert parse_code(" TKT-0001 ") == {"ticket_id": "TKT-0001"}
    assert parse_code("CEDULA: 1712345678") == {"cedula": "1712345678"}


def test_dedup_window():
    dups = DedupWindow(60)
    assert dups.accept("TKT-0001") is True
    assert dups.accept("TKT-0001") is False
    assert dups.accept("TKT-0002") is True

    no_window = DedupWindow(0)
    assert no_window.accept("X") is True
    assert no_window.accept("X") is True


def test_service_suppresses_repeats_and_counts_invalid(db_path):
    station, _, _ = _station(InProcessIntakeClient(ScanIntake(db_path)))
    svc = ScannerService(station, MockReader(0), dup_window_s=60)

    async def go():
        first = await svc.handle("TKT-0001")
        repeat = await svc.handle("TKT-0001")
        invalid = await svc.handle("cedula:")
        return first, repeat, invalid

    first, repeat, invalid = asyncio.run(go())
    assert first.status == ACCEPTED
    assert repeat is None
    assert invalid is None
    assert (svc.reads_total, svc.suppressed_total, svc.invalid_total) == (3, 1, 1)


def test_mock_reader_yields_ticket_ids():
    async def go():
        out = []
        async for code in MockReader(0).codes():
            out.append(code)
            if len(out) == 3:
                break
        return out

    assert asyncio.run(go()) == ["TKT-0001", "TKT-0002", "TKT-0003"]


class _DropsThenForwards(httpx.AsyncBaseTransport):
    """Network that fails `failures` requests, then reaches the real app."""

    def __init__(self, app, failures=1):
        self.inner = httpx.ASGITransport(app=app)
        self.failures = failures

    async def handle_async_request(self, request):
        if self.failures > 0:
            self.failures -= 1
            raise httpx.ConnectError("network down", request=request)
        return await self.inner.handle_async_request(request)


def test_station_recovers_once_intake_answers_again(db_path, rows):
    client = HttpIntakeClient("http://testserver", transport=_DropsThenForwards(create_app(db_path)))
    station, notifier, published = _station(client)
    svc = ScannerService(station, MockReader(0), dup_window_s=60)

    async def go():
        try:
            results = [await svc.handle(t) for t in ("TKT-0001", "TKT-0002", "TKT-0003")]
            assert [r.status for r in results] == [QUEUED_LOCALLY] * 3
            assert station.monitor.online is False

            assert await station.check_connectivity() is True
            await station.wait_idle()
        finally:
            await client.stop()

    asyncio.run(go())
    assert len(station.store) == 0
    assert len(rows(db_path)) == 3
    assert len(notifier.of_kind(ONLINE)) == 1
    assert published == [("attendees", "control_usage")]


def test_connectivity_watch_drains_queue_in_background(db_path, rows):
    client = HttpIntakeClient("http://testserver", transport=_DropsThenForwards(create_app(db_path)))
    station, _, _ = _station(client)
    svc = ScannerService(station, MockReader(0), dup_window_s=60, reconnect_s=0.01)

    async def go():
        watcher = asyncio.create_task(svc._watch_connectivity())
        try:
            await svc.handle("TKT-0001")
            await svc.handle("TKT-0002")
            for _ in range(500):
                if station.monitor.online and not len(station.store) and not station._tasks:
                    break
                await asyncio.sleep(0.01)
        finally:
            watcher.cancel()
            with pytest.raises(asyncio.CancelledError):
                await watcher
            await station.wait_idle()
            await client.stop()

    asyncio.run(go())
    assert station.monitor.online is True
    assert len(station.store) == 0
    assert len(rows(db_path)) == 2


def test_station_stays_offline_while_network_is_down():
    def handler(request):
        raise httpx.ConnectError("still down", request=request)

    client = HttpIntakeClient("http://intake.local", transport=httpx.MockTransport(handler))
    station, notifier, _ = _station(client, online=False)

    async def go():
        try:
            await station.capture(ticket_id="TKT-0001")
            return await station.check_connectivity()
        finally:
            await client.stop()

    assert asyncio.run(go()) is False
    assert len(station.store) == 1
    assert notifier.of_kind(ONLINE) == []
    # Health checks are not scan submissions.
    assert client.send_attempts == 0
