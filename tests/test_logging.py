"""
tests.test_logging
~~~~~~~~~~~~~~~~~~

日志追踪 ID 注入测试。
"""
from __future__ import annotations

import logging

from app.core.logging import RequestIdFilter, request_id_ctx_var


def _record() -> logging.LogRecord:
    return logging.LogRecord("app.test", logging.INFO, __file__, 1, "hello", None, None)


def test_filter_uses_default_outside_connection() -> None:
    record = _record()
    assert RequestIdFilter().filter(record) is True
    assert record.request_id == "-"


def test_filter_injects_current_request_id() -> None:
    token = request_id_ctx_var.set("room-lobby")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    assert record.request_id == "room-lobby"
