"""Pytest configuration for test isolation.

The database client caches one engine per process. Each test gets its own
file-backed SQLite database, so the cached engine is disposed before and
after every test.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from db.client import reset_engine

from tests.helpers.db import bootstrap_sqlite_db


@pytest.fixture(autouse=True)
def _reset_db_engine() -> Iterator[None]:
    reset_engine()
    yield
    reset_engine()


@pytest.fixture
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Bootstrap a fresh SQLite schema and point ``DATABASE_URL`` at it."""

    url = bootstrap_sqlite_db(tmp_path / "budget.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    return url
