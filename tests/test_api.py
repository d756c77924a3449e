"""
tests.test_api
~~~~~~~~~~~~~~

HTTP / WebSocket 接口集成测试。

通过 patch 掉 MongoDB 连接和 ``build_chat_system``，让 lifespan 在内存存储上启动；
``with TestClient(app)`` 保证所有请求与 WebSocket 共享同一个事件循环。
"""
from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.core.rate_limit import limiter
from app.main import app
from app.services.chat_system import ChatSystem
from conftest import FakeHistoryStore, stored_message


@pytest.fixture()
def api_store() -> FakeHistoryStore:
    return FakeHistoryStore({"lobby": [stored_message("alice", "earlier")]})


@pytest.fixture()
def client(api_store: FakeHistoryStore, fake_ai: MagicMock) -> Iterator[TestClient]:
    limiter.enabled = False
    with (
        patch("app.main.connect_mongo", new=AsyncMock()),
        patch("app.main.close_mongo", new=AsyncMock()),
        patch("app.main.build_chat_system", return_value=ChatSystem(store=api_store, ai=fake_ai)),
        TestClient(app) as test_client,
    ):
        yield test_client
    limiter.enabled = True


# ── WebSocket 路径上的普通 HTTP 请求 ─────────────────────────────────

class TestPlainHttpRejected:

    @pytest.mark.parametrize("path", ["/ws/rooms/lobby", "/ws/rooms"])
    def test_plain_get_returns_400(self, client: TestClient, path: str) -> None:
        resp = client.get(path)

        assert resp.status_code == 400
        assert resp.text == "Expected WebSocket"

    def test_rejected_request_creates_no_connection(self, client: TestClient) -> None:
        client.get("/ws/rooms/quiet")

        system: ChatSystem = app.state.chat_system
        assert system.find_room("quiet") is None


# ── WebSocket 聊天 ────────────────────────────────────────────────────

class TestWebSocketChat:

    def test_join_receives_history_first(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            init = ws.receive_json()

        assert init["type"] == "init"
        assert [m["message"] for m in init["payload"]] == ["earlier"]

    def test_default_room(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/rooms") as ws:
            init = ws.receive_json()

        assert init == {"type": "init", "payload": []}

    def test_message_is_broadcast_to_all_members(
        self, client: TestClient, api_store: FakeHistoryStore
    ) -> None:
        with (
            client.websocket_connect("/ws/rooms/lobby") as alice,
            client.websocket_connect("/ws/rooms/lobby") as bob,
        ):
            alice.receive_json()
            bob.receive_json()

            alice.send_json({"username": "alice", "message": "hi all", "timestamp": 1})

            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["type"] == "message"
                assert frame["payload"][0]["username"] == "alice"
                assert frame["payload"][0]["message"] == "hi all"
                assert frame["payload"][0]["timestamp"] != 1

        assert [m["message"] for m in api_store.data["lobby"]] == ["earlier", "hi all"]

    def test_rooms_are_isolated(self, client: TestClient) -> None:
        with (
            client.websocket_connect("/ws/rooms/star") as star,
            client.websocket_connect("/ws/rooms/moon") as moon,
        ):
            star.receive_json()
            moon.receive_json()

            star.send_json({"username": "alice", "message": "only star"})
            assert star.receive_json()["payload"][0]["message"] == "only star"

            moon.send_json({"username": "bob", "message": "only moon"})
            assert moon.receive_json()["payload"][0]["message"] == "only moon"

    def test_invalid_frames_are_ignored(self, client: TestClient) -> None:
        """无效帧被静默丢弃，连接保持可用。"""
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()

            ws.send_text("not json")
            ws.send_json({"username": "alice"})
            ws.send_json({"username": "alice", "message": "valid"})

            frame = ws.receive_json()
            assert frame["payload"][0]["message"] == "valid"

    def test_ai_command_broadcasts_reply_after_trigger(
        self, client: TestClient, fake_ai: MagicMock
    ) -> None:
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()

            ws.send_json({"username": "alice", "message": "/ai what is 2+2"})

            trigger = ws.receive_json()["payload"][0]
            reply = ws.receive_json()["payload"][0]

        assert trigger["message"] == "/ai what is 2+2"
        assert reply["username"] == "AI"
        assert reply["message"] == "Hello from AI"
        segments = fake_ai.complete.await_args.args[0]
        assert segments[-1] == {"role": "user", "content": "what is 2+2"}

    def test_room_is_released_after_last_connection_leaves(
        self, client: TestClient, api_store: FakeHistoryStore
    ) -> None:
        """最后一个连接离开后房间被回收；再次加入时从存储恢复历史。"""
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()
            ws.send_json({"username": "alice", "message": "bye"})
            ws.receive_json()

        system: ChatSystem = app.state.chat_system
        client.portal.call(system.wait_released)
        assert system.find_room("lobby") is None
        assert client.get("/api/rooms").json()["data"] == []

        with client.websocket_connect("/ws/rooms/lobby") as ws:
            init = ws.receive_json()

        assert [m["message"] for m in init["payload"]] == ["earlier", "bye"]
        assert api_store.get_calls == ["lobby", "lobby"]

    def test_init_request_replays_history(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()

            ws.send_json({"type": "init"})

            frame = ws.receive_json()
            assert frame["type"] == "init"
            assert [m["message"] for m in frame["payload"]] == ["earlier"]


# ── REST 接口 ─────────────────────────────────────────────────────────

class TestRoomsApi:

    def test_room_info(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()
            resp = client.get("/api/rooms/lobby")

        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 200
        assert body["data"] == {"room_name": "lobby", "online_count": 1, "history_size": 1}

    def test_history(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/rooms/lobby") as ws:
            ws.receive_json()
            resp = client.get("/api/rooms/lobby/history")

        data = resp.json()["data"]
        assert data["room_name"] == "lobby"
        assert data["total"] == 1
        assert data["messages"][0]["username"] == "alice"

    @pytest.mark.parametrize("path", ["/api/rooms/nowhere", "/api/rooms/nowhere/history"])
    def test_unknown_room_returns_404_without_creating_it(
        self, client: TestClient, api_store: FakeHistoryStore, path: str
    ) -> None:
        """查询接口不会为任意房间名创建房间或读取存储。"""
        resp = client.get(path)

        assert resp.status_code == 404
        assert resp.json()["code"] == 404
        assert resp.json()["data"] is None
        assert app.state.chat_system.find_room("nowhere") is None
        assert api_store.get_calls == []

    def test_list_rooms(self, client: TestClient) -> None:
        with (
            client.websocket_connect("/ws/rooms/star") as star,
            client.websocket_connect("/ws/rooms/moon") as moon,
        ):
            star.receive_json()
            moon.receive_json()
            names = sorted(r["room_name"] for r in client.get("/api/rooms").json()["data"])

        assert names == ["moon", "star"]

    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["environment"] == "test"

    def test_rate_limit(self, client: TestClient) -> None:
        """短时间内超出 API_RATE_LIMIT 的请求返回 429。"""
        limiter.enabled = True
        limiter.reset()
        try:
            codes = [client.get("/api/rooms").status_code for _ in range(35)]
        finally:
            limiter.reset()
            limiter.enabled = False

        assert 200 in codes
        assert 429 in codes
