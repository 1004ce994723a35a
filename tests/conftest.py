# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database seeded with the demo event.

Helpers
- db_path        : seeded scangate.sqlite under tmp_path
- usage_rows(db) : all control_usage rows as dicts (oldest first)
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from scangate.tools.seed_reference import seed


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    p = tmp_path / "scangate.sqlite"
    seed(p)
    return p


def usage_rows(db_path: Path) -> list[dict]:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        return [dict(r) for r in conn.execute("SELECT * FROM control_usage ORDER BY usage_id")]
    finally:
        conn.close()


@pytest.fixture
def rows():
    return usage_rows
