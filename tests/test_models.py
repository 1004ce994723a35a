import pytest

from scangate.errors import ErrorKind, IntakeRejectedError, ScanValidationError, classify_status
from scangate.models import SYNC_DEVICE_SUFFIX, IntakeOutcome, PendingScan


def test_capture_assigns_id_and_defaults():
    a = PendingScan.capture(ticket_id=" TKT-0001 ", control_type_id="entrance", event_id="evt-demo")
    b = PendingScan.capture(ticket_id="TKT-0001", control_type_id="entrance", event_id="evt-demo")
    assert a.id != b.id
    assert a.ticket_id == "TKT-0001"
    assert a.device == "Scanner"
    assert a.retry_count == 0
    assert a.timestamp > 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"control_type_id": "entrance", "event_id": "evt-demo"},
        {"ticket_id": "T", "cedula": "1712345678", "control_type_id": "entrance", "event_id": "evt-demo"},
        {"ticket_id": "  ", "control_type_id": "entrance", "event_id": "evt-demo"},
        {"ticket_id": "T", "control_type_id": "", "event_id": "evt-demo"},
        {"ticket_id": "T", "control_type_id": "entrance", "event_id": None},
    ],
)
def test_capture_rejects_unusable_scans(kwargs):
    with pytest.raises(ScanValidationError):
        PendingScan.capture(**kwargs)


def test_replay_payload_tags_device_and_keeps_id():
    scan = PendingScan.capture(cedula="1712345678", control_type_id="entrance", event_id="evt-demo",
                               device="Gate A", now_ms=42)
    live = scan.intake_payload()
    replay = scan.intake_payload(replay=True)
    assert live["device"] == "Gate A"
    assert replay["device"] == "Gate A" + SYNC_DEVICE_SUFFIX
    assert replay["clientScanId"] == scan.id
    assert replay["cedula"] == "1712345678"
    assert "ticketId" not in replay
    assert replay["timestamp"] == 42


def test_persisted_shape_is_camelcase():
    scan = PendingScan.capture(ticket_id="TKT-0001", control_type_id="bar", event_id="evt-demo")
    d = scan.to_dict()
    assert set(d) == {"id", "ticketId", "cedula", "controlTypeId", "eventId", "device", "timestamp", "retryCount"}
    assert PendingScan.from_dict(d) == scan


def test_rejection_payload_shape():
    out = IntakeOutcome(accepted=False, reason="limit_reached", status_code=403,
                        message="limit reached (3/3)", current_uses=3, max_uses=3)
    body = out.to_payload()
    assert body["success"] is False
    assert body["can_access"] is False
    assert body["error_message"] == "limit reached (3/3)"
    assert (body["current_uses"], body["max_uses"]) == (3, 3)


@pytest.mark.parametrize(
    "status,kind",
    [
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (408, ErrorKind.TRANSIENT),
        (429, ErrorKind.TRANSIENT),
        (400, ErrorKind.VALIDATION),
        (422, ErrorKind.VALIDATION),
        (403, ErrorKind.REJECTION),
        (404, ErrorKind.REJECTION),
    ],
)
def test_classify_status(status, kind):
    assert classify_status(status) is kind


def test_rejected_error_reason_falls_back_to_kind():
    assert IntakeRejectedError("no", payload={"reason": "attendee_blocked"}).reason == "attendee_blocked"
    assert IntakeRejectedError("no", kind=ErrorKind.VALIDATION).reason == "validation"
