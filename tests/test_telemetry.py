"""Tests for structured request logging."""

import json
import logging
from pathlib import Path

import pytest

from chat_gateway.telemetry import log_request, logger, setup_logging


def test_log_request_is_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="gateway"):
        log_request(
            route="/api/chat",
            ip="203.0.113.7",
            outcome="answered",
            provider="l5-server",
            tokens=0,
            session_total=12,
            pack_status="ok",
            request_id="gw-1",
        )

    record = json.loads(caplog.records[-1].getMessage())
    assert record["client"] == "203.0.x.x"
    assert record["provider"] == "l5-server"
    assert record["tokens"] == 0
    assert record["session_total"] == 12
    assert record["pack_status"] == "ok"
    assert "error" not in record
    assert "203.0.113.7" not in caplog.text


def test_setup_logging_writes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "handlers", [])
    log_file = tmp_path / "logs" / "gateway.log"

    setup_logging(str(log_file))
    log_request(route="/api/lead", ip="::1", outcome="rejected", error="csrf_failed")
    for handler in logger.handlers:
        handler.flush()

    line = log_file.read_text().strip().splitlines()[-1]
    assert '"error": "csrf_failed"' in line
    assert logging.getLogger("httpx").level == logging.WARNING

    for handler in logger.handlers:
        handler.close()
