# tests/unit/test_engine_dsn.py
from __future__ import annotations

import pytest

from medstock.db.engine import is_sqlite, normalize_async_dsn


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("postgresql://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgresql+psycopg://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("sqlite:///./medstock.db", "sqlite+aiosqlite:///./medstock.db"),
        ("sqlite+aiosqlite:///./medstock.db", "sqlite+aiosqlite:///./medstock.db"),
        ('  "postgresql://u@h/db" ', "postgresql+psycopg://u@h/db"),
    ],
)
def test_normalize_async_dsn(raw, expected):
    assert normalize_async_dsn(raw) == expected


def test_is_sqlite():
    assert is_sqlite("sqlite+aiosqlite:///./x.db")
    assert not is_sqlite("postgresql+psycopg://u@h/db")
