import json

from scangate.models import PendingScan
from scangate.pending_store import (
    STORAGE_KEY,
    MemoryQueueStorage,
    PendingScanStore,
    SqliteQueueStorage,
)


def _scan(ticket):
    return PendingScan.capture(ticket_id=ticket, control_type_id="entrance", event_id="evt-demo",
                               device="Gate A", now_ms=1_700_000_000_000)


def test_enqueue_persists_camelcase_before_returning():
    storage = MemoryQueueStorage()
    store = PendingScanStore(storage)
    scan = _scan("TKT-0001")
    scan.retry_count = 3
    store.enqueue(scan)

    saved = json.loads(storage.text)
    assert len(saved) == 1
    assert saved[0]["ticketId"] == "TKT-0001"
    assert saved[0]["controlTypeId"] == "entrance"
    assert saved[0]["retryCount"] == 0
    assert saved[0]["timestamp"] == 1_700_000_000_000


def test_restore_keeps_fifo_order():
    storage = MemoryQueueStorage()
    store = PendingScanStore(storage)
    a, b, c = _scan("A"), _scan("B"), _scan("C")
    for s in (a, b, c):
        store.enqueue(s)

    again = PendingScanStore(storage)
    assert again.ids() == [a.id, b.id, c.id]


def test_empty_queue_removes_entry():
    storage = MemoryQueueStorage()
    store = PendingScanStore(storage)
    a, b = _scan("A"), _scan("B")
    store.enqueue(a)
    store.enqueue(b)

    removed = store.drain_succeeded([a.id, b.id, "unknown"])
    assert [s.id for s in removed] == [a.id, b.id]
    assert len(store) == 0
    assert storage.text is None


def test_discard_returns_removed():
    store = PendingScanStore(MemoryQueueStorage())
    a, b = _scan("A"), _scan("B")
    store.enqueue(a)
    store.enqueue(b)
    assert [s.subject for s in store.discard([b.id])] == ["B"]
    assert store.ids() == [a.id]
    assert store.discard([]) == []


def test_retry_ceiling_drops_on_fifth_failure():
    storage = MemoryQueueStorage()
    store = PendingScanStore(storage)
    d = _scan("TKT-D")
    store.enqueue(d)

    for attempt in range(1, 5):
        assert store.bump_retry([d.id]) == []
        (queued,) = store.snapshot()
        assert queued.retry_count == attempt
        assert queued.retry_count < store.max_retries

    dropped = store.bump_retry([d.id])
    assert [s.subject for s in dropped] == ["TKT-D"]
    assert dropped[0].retry_count == 5
    assert len(store) == 0
    assert storage.text is None


def test_snapshot_is_a_copy():
    store = PendingScanStore(MemoryQueueStorage())
    store.enqueue(_scan("A"))
    snap = store.snapshot()
    snap[0].retry_count = 99
    snap.clear()
    assert store.snapshot()[0].retry_count == 0


def test_corrupt_entry_is_cleared():
    storage = MemoryQueueStorage("{not json")
    store = PendingScanStore(storage)
    assert len(store) == 0
    assert storage.text is None

    storage = MemoryQueueStorage(json.dumps({"id": "x"}))
    assert len(PendingScanStore(storage)) == 0
    assert storage.text is None


def test_sqlite_storage_survives_restart(tmp_path):
    path = tmp_path / "station" / "queue.sqlite"
    store = PendingScanStore(SqliteQueueStorage(path))
    a, b = _scan("A"), _scan("B")
    store.enqueue(a)
    store.enqueue(b)
    store.bump_retry([b.id])

    restarted = PendingScanStore(SqliteQueueStorage(path))
    snap = restarted.snapshot()
    assert [s.id for s in snap] == [a.id, b.id]
    assert [s.retry_count for s in snap] == [0, 1]

    restarted.drain_succeeded([a.id, b.id])
    assert SqliteQueueStorage(path).load() is None


def test_sqlite_storage_uses_pending_scans_key(tmp_path):
    import sqlite3

    path = tmp_path / "queue.sqlite"
    store = PendingScanStore(SqliteQueueStorage(path))
    store.enqueue(_scan("A"))

    conn = sqlite3.connect(str(path))
    try:
        keys = [r[0] for r in conn.execute("SELECT key FROM kv")]
    finally:
        conn.close()
    assert keys == [STORAGE_KEY]
