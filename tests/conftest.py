"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存假实现替换 MongoDB 和 WebSocket，
使单元测试可在无网络、无数据库环境下快速运行。
"""
from __future__ import annotations

import copy
import json
import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017")


class FakeHistoryStore:
    """内存版历史存储，行为与 ``MongoHistoryStore`` 一致（整体覆盖写入）。"""

    def __init__(self, initial: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.data: dict[str, list[dict[str, Any]]] = copy.deepcopy(initial or {})
        self.get_calls: list[str] = []
        self.put_calls: list[tuple[str, list[dict[str, Any]]]] = []

    async def get(self, room_name: str) -> list[dict[str, Any]] | None:
        self.get_calls.append(room_name)
        value = self.data.get(room_name)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, room_name: str, messages: list[dict[str, Any]]) -> None:
        self.put_calls.append((room_name, copy.deepcopy(messages)))
        self.data[room_name] = copy.deepcopy(messages)


def make_fake_websocket(*, fail_send: bool = False, scope_type: str = "websocket") -> MagicMock:
    """构造一个假的 WebSocket 连接，``send_text`` 记录所有下发的帧。"""
    ws = MagicMock()
    ws.scope = {"type": scope_type}
    ws.headers = {}
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock(
        side_effect=ConnectionResetError("socket closed") if fail_send else None,
    )
    return ws


def sent_frames(ws: MagicMock) -> list[dict[str, Any]]:
    """解析假连接收到的全部 JSON 帧。"""
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


def chat_frame(username: str, message: str) -> str:
    return json.dumps({"username": username, "message": message})


def stored_message(username: str, message: str, timestamp: int = 1_700_000_000_000) -> dict[str, Any]:
    return {"username": username, "message": message, "timestamp": timestamp}


@pytest.fixture()
def fake_store() -> FakeHistoryStore:
    return FakeHistoryStore()


@pytest.fixture()
def fake_ai() -> MagicMock:
    """返回一个 mock 的 AI 生成服务，默认回复固定文本。"""
    ai = MagicMock()
    ai.complete = AsyncMock(return_value="Hello from AI")
    return ai
