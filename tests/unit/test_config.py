# tests/unit/test_config.py
from __future__ import annotations

import pytest
from pydantic import ValidationError

from medstock.core.config import AppSettings, get_settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("RESERVATION_TTL_MINUTES", raising=False)
    monkeypatch.delenv("ENABLE_SWEEPER", raising=False)
    s = AppSettings(_env_file=None)
    assert s.RESERVATION_TTL_MINUTES == 30
    assert s.PRESCRIPTION_RESERVATION_TTL_MINUTES == 60
    assert s.ENABLE_SWEEPER is True
    assert s.ENABLE_ALERT_SCANS is False


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./x.db")
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("ENABLE_ALERT_SCANS", "true")
    monkeypatch.setenv("DEFAULT_FACILITY_ID", "fac-9")
    get_settings.cache_clear()
    try:
        s = get_settings()
        assert s.DATABASE_URL == "sqlite+aiosqlite:///./x.db"
        assert s.SWEEP_INTERVAL_SECONDS == 15
        assert s.ENABLE_ALERT_SCANS is True
        assert s.DEFAULT_FACILITY_ID == "fac-9"
        assert get_settings() is s
    finally:
        get_settings.cache_clear()


def test_non_positive_ttl_rejected(monkeypatch):
    monkeypatch.setenv("RESERVATION_TTL_MINUTES", "0")
    with pytest.raises(ValidationError):
        AppSettings(_env_file=None)
