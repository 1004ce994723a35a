import asyncio

from scangate.db_schema import connect_async
from scangate.limits import NO_LIMIT_MESSAGE, Subject, decide, evaluate


def test_decide_under_limit_grants():
    d = decide(2, True, 3)
    assert d.can_access is True
    assert (d.current_uses, d.max_uses) == (2, 3)


def test_decide_at_limit_denies():
    d = decide(3, True, 3)
    assert d.can_access is False
    assert (d.current_uses, d.max_uses) == (3, 3)
    assert "3/3" in d.error_message


def test_decide_null_max_is_unlimited():
    d = decide(250, True, None)
    assert d.can_access is True
    assert d.max_uses is None


def test_decide_without_row_fails_open():
    d = decide(7, False, None)
    assert d.can_access is True
    assert d.max_uses == 0
    assert d.error_message == NO_LIMIT_MESSAGE


def test_decide_without_row_uses_default_when_given():
    assert decide(0, False, None, default_max_uses=1).can_access is True
    d = decide(1, False, None, default_max_uses=1)
    assert d.can_access is False
    assert d.max_uses == 1


def _insert_usage(db_path, attendee_id, control_type_id, n):
    import sqlite3
    conn = sqlite3.connect(str(db_path))
    with conn:
        conn.executemany(
            "INSERT INTO control_usage(event_id, attendee_id, control_type_id, used_at, device) "
            "VALUES ('evt-demo', ?, ?, ?, 'Gate')",
            [(attendee_id, control_type_id, f"2026-10-24T20:0{i}:00.000Z") for i in range(n)],
        )
    conn.close()


def _ana():
    return Subject("ticket", "evt-demo", "cat-general", attendee_id="att-001", ticket_id="TKT-0001")


def test_evaluate_counts_prior_uses(db_path):
    _insert_usage(db_path, "att-001", "bar", 3)

    async def go():
        db = await connect_async(db_path)
        try:
            return await evaluate(db, _ana(), "bar")
        finally:
            await db.close()

    d = asyncio.run(go())
    assert d.can_access is False
    assert (d.current_uses, d.max_uses) == (3, 3)


def test_evaluate_missing_row_reports_zero_max(db_path):
    async def go():
        db = await connect_async(db_path)
        try:
            return await evaluate(db, _ana(), "merch")
        finally:
            await db.close()

    d = asyncio.run(go())
    assert d.can_access is True
    assert d.max_uses == 0
    assert d.error_message == NO_LIMIT_MESSAGE


def test_evaluate_cedula_default_only_applies_to_cedulas(db_path):
    ced = Subject("cedula", "evt-demo", None, numero_cedula="0912345678")

    async def go():
        db = await connect_async(db_path)
        try:
            strict = await evaluate(db, ced, "entrance", cedula_default_max_uses=1)
            ticket = await evaluate(db, _ana(), "merch", cedula_default_max_uses=1)
            return strict, ticket
        finally:
            await db.close()

    strict, ticket = asyncio.run(go())
    assert strict.max_uses == 1
    assert ticket.max_uses == 0
