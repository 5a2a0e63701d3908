from __future__ import annotations

import logging

from ghl_attachment_relay.logging_config import RecentLogBuffer


def _record(name: str, msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, msg, None, None)


def test_buffer_keeps_most_recent_lines() -> None:
    buf = RecentLogBuffer(capacity=2)
    for i in range(3):
        buf.handle(_record("ghl_attachment_relay.login", f"line {i}"))

    lines = buf.lines()
    assert len(lines) == 2
    assert lines[0].endswith("[INFO] line 1")
    assert lines[1].endswith("[INFO] line 2")

    buf.clear()
    assert buf.lines() == []


def test_buffer_filter_drops_library_records() -> None:
    buf = RecentLogBuffer(capacity=10)
    buf.addFilter(logging.Filter("ghl_attachment_relay"))
    buf.handle(_record("httpx", "noise"))
    buf.handle(_record("ghl_attachment_relay.attachments", "kept", logging.ERROR))
    assert len(buf.lines()) == 1
    assert "[ERROR] kept" in buf.lines()[0]
