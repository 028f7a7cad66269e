# tests/unit/test_logging.py
from __future__ import annotations

import json
import logging

import pytest

from medstock.core.logging import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


def test_json_lines_carry_extra_fields(capsys, restore_root_logger):
    setup_logging("info", json=True)
    logging.getLogger("medstock.test").info("reserved %d", 5, extra={"reservation_id": "r1"})

    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "reserved 5"
    assert payload["level"] == "info"
    assert payload["logger"] == "medstock.test"
    assert payload["reservation_id"] == "r1"
    assert "timestamp" in payload


def test_single_handler_after_repeated_setup(restore_root_logger):
    setup_logging("WARNING")
    setup_logging("WARNING")
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING


def test_json_lines_carry_exceptions(capsys, restore_root_logger):
    setup_logging("INFO", json=True)
    try:
        raise RuntimeError("sweep failed")
    except RuntimeError:
        logging.getLogger("medstock.sweeper").exception("tick failed")

    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["event"] == "tick failed"
    assert "RuntimeError: sweep failed" in payload["exception"]
