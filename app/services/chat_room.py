"""
app.services.chat_room
~~~~~~~~~~~~~~~~~~~~~~

聊天室会话 —— 单个房间全部实时状态的唯一持有者。

每个 ``ChatRoom`` 拥有独立的历史缓冲区（``RoomHistory``）和连接登记表
（``ConnectionRegistry``），房间之间互不干扰。

处理模型:
  - WebSocket 接收循环只调用 ``on_message()`` 把原始帧放入房间队列，从不阻塞；
  - 房间内唯一的处理协程按到达顺序逐条取出并处理：
    解析 → 校验 → 追加历史 → 持久化 → 广播 →（``/ai`` 指令）调用 AI → 追加/持久化/广播回复；
  - 处理协程在 AI 返回前不会取下一条消息，因此 AI 回复在历史和广播中
    总是紧跟在触发它的那条消息之后。
  - ``_lock`` 保证"登记新连接 + 回放历史"与"追加 + 广播"互斥，
    新连接先完整收到当前历史，再收到之后的广播。
"""
from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable
from typing import Any, Protocol

from fastapi import WebSocket
from pydantic import ValidationError
from starlette.requests import HTTPConnection

from app.core.config import settings
from app.core.logging import get_logger, request_id_ctx_var
from app.prompts.chat_assistant import PromptSegment, build_ai_messages, extract_ai_prompt
from app.schemas.chat_messages import (
    AI_USERNAME,
    ChatEnvelope,
    ChatMessage,
    InboundChat,
    RoomInfoData,
)
from app.services.connection_registry import ConnectionRegistry
from app.services.room_history import MAX_HISTORY, HistoryStore, RoomHistory

logger = get_logger(__name__)


class BadRequestError(Exception):
    """请求不是 WebSocket 升级请求。唯一会返回给客户端的错误。"""


class RoomClosedError(RuntimeError):
    """房间未激活或已被回收，不能再接入连接。"""


class CompletionService(Protocol):
    """AI 文本生成服务端口。"""

    async def complete(self, segments: list[PromptSegment]) -> str: ...


def ensure_websocket_upgrade(conn: HTTPConnection) -> None:
    """校验连接是 WebSocket 升级请求，否则抛出 ``BadRequestError``。

    ASGI ``websocket`` 作用域本身就代表已协商的升级；普通 HTTP 请求则检查 ``Upgrade`` 头。
    """
    if conn.scope.get("type") == "websocket":
        return
    if conn.headers.get("upgrade", "").lower() != "websocket":
        raise BadRequestError("Expected WebSocket")


def decode_frame(raw: str | bytes) -> dict[str, Any] | None:
    """把原始帧解析为 JSON 对象，失败返回 ``None``。"""
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("收到无效 JSON，已丢弃")
        return None
    if not isinstance(data, dict):
        logger.warning("收到非对象 JSON，已丢弃")
        return None
    return data


def parse_chat(data: dict[str, Any]) -> InboundChat | None:
    """从 JSON 对象中取出聊天消息，兼容 ``{"type": "message", "payload": [...]}`` 包装。"""
    if data.get("type") == "message":
        payload = data.get("payload")
        if not isinstance(payload, list) or not payload:
            logger.warning("message 帧缺少 payload，已丢弃")
            return None
        data = payload[0]
    try:
        return InboundChat.model_validate(data)
    except ValidationError as e:
        logger.warning("消息字段校验失败，已丢弃: %s", e.errors(include_url=False))
        return None


class ChatRoom:
    """一个聊天室的会话对象。

    Attributes:
        room_name: 房间名称。
        history: 本房间的近期历史。
        registry: 本房间的在线连接登记表。
        ai: 可选的 AI 生成服务，为 ``None`` 时 ``/ai`` 指令被忽略。
    """

    def __init__(
        self,
        room_name: str,
        store: HistoryStore,
        ai: CompletionService | None = None,
        *,
        capacity: int = MAX_HISTORY,
        ai_timeout: float | None = None,
        command_prefix: str | None = None,
        queue_size: int | None = None,
        on_idle: Callable[[ChatRoom], None] | None = None,
    ) -> None:
        self.room_name = room_name
        self.history = RoomHistory(room_name, store, capacity)
        self.registry = ConnectionRegistry()
        self.ai = ai
        self.ai_timeout: float = settings.AI_TIMEOUT_SECONDS if ai_timeout is None else ai_timeout
        self.command_prefix: str = (
            settings.AI_COMMAND_PREFIX if command_prefix is None else command_prefix
        )
        self._queue: asyncio.Queue[tuple[WebSocket, str | bytes]] = asyncio.Queue(
            maxsize=settings.ROOM_QUEUE_SIZE if queue_size is None else queue_size,
        )
        self._lock = asyncio.Lock()
        self._worker: asyncio.Task[None] | None = None
        self._busy = False
        # 房间变为空闲（无连接、无待处理消息）时的回调，由 ChatSystem 用来回收房间
        self._on_idle = on_idle

    # ── 生命周期 ──────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def activate(self) -> None:
        """加载持久化历史并启动处理协程。必须在接入任何连接之前完成。"""
        if self.is_active:
            return
        await self.history.load()
        self._worker = asyncio.create_task(
            self._run(), name=f"chat-room-{self.room_name}",
        )
        logger.info("聊天室已激活 | room=%s | 历史 %d 条", self.room_name, len(self.history))

    async def close(self) -> None:
        """停止处理协程。未处理的排队消息会被丢弃。"""
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("聊天室已关闭 | room=%s", self.room_name)

    async def drain(self) -> None:
        """等待队列中已有的消息（含 AI 回复）全部处理完。"""
        await self._queue.join()

    async def release_if_idle(self) -> bool:
        """房间空闲时停止处理协程并返回 ``True``，否则保持运行。

        与连接接入共用 ``_lock``：已释放的房间不会再接入新连接。
        """
        async with self._lock:
            if not self.is_idle:
                return False
            await self.close()
        return True

    # ── 连接 ──────────────────────────────────────────────────────────

    async def accept_connection(self, websocket: WebSocket) -> None:
        """完成握手、登记连接，并只向该连接回放当前历史（最旧在前）。

        Raises:
            BadRequestError: 请求没有携带 ``Upgrade: websocket``。
            RoomClosedError: 握手完成时房间未激活（或刚被回收）。
        """
        ensure_websocket_upgrade(websocket)
        await websocket.accept()
        await self.admit(websocket)

    async def admit(self, websocket: WebSocket) -> None:
        """登记一个已完成握手的连接并回放历史。

        Raises:
            RoomClosedError: 房间未激活。
        """
        async with self._lock:
            if not self.is_active:
                raise RoomClosedError(f"聊天室未激活: {self.room_name}")
            self.registry.add(websocket)
            await self.registry.send_to(
                websocket,
                ChatEnvelope.history(self.history.messages).model_dump_json(),
            )
        logger.info("连接已加入 | room=%s | 在线: %d", self.room_name, self.online_count)

    def on_message(self, websocket: WebSocket, raw_frame: str | bytes) -> bool:
        """把收到的原始帧放入房间队列，立即返回。队列已满时丢弃并返回 ``False``。"""
        try:
            self._queue.put_nowait((websocket, raw_frame))
        except asyncio.QueueFull:
            logger.warning("房间队列已满，丢弃消息 | room=%s", self.room_name)
            return False
        return True

    def on_close(self, websocket: WebSocket) -> None:
        self.registry.remove(websocket)
        logger.info("连接已关闭 | room=%s | 在线: %d", self.room_name, self.online_count)
        self._notify_if_idle()

    def on_error(self, websocket: WebSocket) -> None:
        self.registry.remove(websocket)
        logger.warning("连接异常断开 | room=%s | 在线: %d", self.room_name, self.online_count)
        self._notify_if_idle()

    # ── 查询 ──────────────────────────────────────────────────────────

    @property
    def online_count(self) -> int:
        return self.registry.online_count

    @property
    def is_idle(self) -> bool:
        """没有在线连接，也没有排队或正在处理的消息。"""
        return self.online_count == 0 and self._queue.empty() and not self._busy

    def _notify_if_idle(self) -> None:
        if self._on_idle is not None and self.is_active and self.is_idle:
            self._on_idle(self)

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_name=self.room_name,
            online_count=self.online_count,
            history_size=len(self.history),
        )

    # ── 串行处理 ──────────────────────────────────────────────────────

    async def _run(self) -> None:
        request_id_ctx_var.set(f"room-{self.room_name}")
        while True:
            websocket, raw_frame = await self._queue.get()
            self._busy = True
            try:
                await self._handle_frame(websocket, raw_frame)
            except Exception as e:
                # 单条消息出错不能拖垮整个房间
                logger.error("消息处理异常: %s", e, exc_info=True)
            finally:
                self._busy = False
                self._queue.task_done()
            # 发送者可能在消息排队期间已断开
            self._notify_if_idle()

    async def _handle_frame(self, websocket: WebSocket, raw_frame: str | bytes) -> None:
        data = decode_frame(raw_frame)
        if data is None:
            return

        if data.get("type") == "init":
            # 客户端主动请求重新回放历史，只发给请求者
            if websocket in self.registry:
                await self.registry.send_to(
                    websocket,
                    ChatEnvelope.history(self.history.messages).model_dump_json(),
                )
            return

        chat = parse_chat(data)
        if chat is None:
            return

        message = chat.to_message()
        await self._publish(message)

        prompt = extract_ai_prompt(message.message, self.command_prefix)
        if prompt is not None:
            await self._augment(prompt)

    async def _publish(self, message: ChatMessage) -> None:
        """追加历史 → 持久化 → 广播。持久化失败不影响广播。"""
        async with self._lock:
            self.history.append(message)
            await self.history.persist()
            delivered = await self.registry.broadcast(
                ChatEnvelope.single(message).model_dump_json(),
            )
        logger.debug(
            "消息已广播 | room=%s | from=%s | 送达 %d",
            self.room_name, message.username, delivered,
        )

    async def _augment(self, prompt: str) -> None:
        """调用 AI 服务并发布回复。任何失败都只记录日志，不产生消息。"""
        if not prompt:
            logger.debug("AI 指令内容为空，忽略 | room=%s", self.room_name)
            return
        if self.ai is None:
            logger.info("未配置 AI 服务，忽略 AI 指令 | room=%s", self.room_name)
            return

        try:
            reply = await asyncio.wait_for(
                self.ai.complete(build_ai_messages(prompt)),
                timeout=self.ai_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("AI 请求超时（%.1fs）| room=%s", self.ai_timeout, self.room_name)
            return
        except Exception as e:
            logger.warning("AI 请求失败: %s | room=%s", e, self.room_name, exc_info=True)
            return

        reply = (reply or "").strip()
        if not reply:
            logger.info("AI 返回空回复，忽略 | room=%s", self.room_name)
            return

        await self._publish(ChatMessage(username=AI_USERNAME, message=reply))
