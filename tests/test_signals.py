import logging

from scangate.signals import DROPPED, InvalidationBus, Notifier, RecordingNotifier


def test_publish_dedupes_topics_and_survives_broken_subscriber():
    bus = InvalidationBus()
    got = []

    def broken(topics):
        raise RuntimeError("stale cache")

    bus.subscribe(broken)
    bus.subscribe(got.append)
    bus.publish(["attendees", "control_usage", "attendees"])
    bus.publish([])
    assert got == [("attendees", "control_usage")]


def test_notifier_logs_with_structured_fields(caplog):
    caplog.set_level(logging.INFO, logger="scangate.notify")
    Notifier().notify(DROPPED, "Scan discarded: TKT-D - too many retries", ticket_id="TKT-D")
    (record,) = [r for r in caplog.records if r.name == "scangate.notify"]
    assert record.levelno == logging.ERROR
    assert record.kind == DROPPED
    assert record.ticket_id == "TKT-D"


def test_recording_notifier_filters_by_kind():
    n = RecordingNotifier()
    n.notify("queued", "one")
    n.notify("synced", "two", count=1)
    assert [x.message for x in n.of_kind("synced")] == ["two"]
    assert n.items[1].fields == {"count": 1}
