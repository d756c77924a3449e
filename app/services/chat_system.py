"""
app.services.chat_system
~~~~~~~~~~~~~~~~~~~~~~~~

聊天系统 —— 进程内房间注册表，把房间名映射到唯一的 ``ChatRoom`` 实例。

房间在首个连接加入时创建，最后一个连接离开且消息处理完毕后回收；
再次加入时从存储重新加载历史。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.chat_system``。
"""
from __future__ import annotations

import asyncio
import contextlib

from app.core.config import settings
from app.core.logging import get_logger
from app.schemas.chat_messages import RoomInfoData
from app.services.chat_room import ChatRoom, CompletionService
from app.services.room_history import HistoryStore

logger = get_logger(__name__)


class RoomNotFoundError(LookupError):
    """查询的房间当前不活跃（没有连接）。"""

    def __init__(self, room_name: str) -> None:
        super().__init__(f"房间不存在或当前无人在线: {room_name}")
        self.room_name = room_name


class ChatSystem:
    """聊天系统（每个进程一个）。

    持有历史存储和可选的 AI 服务，管理多个聊天室。

    - ``get_room(room_name)`` → 获取/创建指定房间（首次创建时加载历史并激活）
    - ``find_room(room_name)`` → 只查询活跃房间，不创建
    - ``list_rooms()``        → 列出所有活跃房间
    - ``close()``             → 处理完排队消息后关闭所有房间

    Attributes:
        store: 房间历史存储。
        ai: 可选的 AI 生成服务。
    """

    def __init__(self, store: HistoryStore, ai: CompletionService | None = None) -> None:
        self.store = store
        self.ai = ai
        self._rooms: dict[str, ChatRoom] = {}
        self._lock = asyncio.Lock()
        self._releases: set[asyncio.Task[None]] = set()

    async def get_room(self, room_name: str) -> ChatRoom:
        """获取指定聊天室，不存在则创建并等待其激活完成。

        并发的首次访问只会创建并激活一个实例。
        """
        room = self._rooms.get(room_name)
        if room is not None and room.is_active:
            return room

        async with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                room = ChatRoom(
                    room_name=room_name,
                    store=self.store,
                    ai=self.ai,
                    on_idle=self._schedule_release,
                )
                self._rooms[room_name] = room
                logger.info("聊天室已创建 | room=%s", room_name)
            await room.activate()
        return room

    def find_room(self, room_name: str) -> ChatRoom | None:
        """只查询已存在的房间，不会创建。"""
        return self._rooms.get(room_name)

    def require_room(self, room_name: str) -> ChatRoom:
        """同 ``find_room``，房间不存在时抛出 ``RoomNotFoundError``。"""
        room = self.find_room(room_name)
        if room is None:
            raise RoomNotFoundError(room_name)
        return room

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]

    # ── 空闲回收 ──────────────────────────────────────────────────────

    def _schedule_release(self, room: ChatRoom) -> None:
        task = asyncio.get_running_loop().create_task(self._release(room))
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    async def _release(self, room: ChatRoom) -> None:
        async with self._lock:
            if self._rooms.get(room.room_name) is not room:
                return
            if await room.release_if_idle():
                del self._rooms[room.room_name]
                logger.info("空闲聊天室已回收 | room=%s | 剩余: %d", room.room_name, len(self._rooms))

    async def wait_released(self) -> None:
        """等待已调度的回收任务全部完成。"""
        while self._releases:
            await asyncio.gather(*self._releases)

    # ── 关闭 ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        """关闭全部房间（进程退出时调用）。

        每个房间先在 ``SHUTDOWN_DRAIN_SECONDS`` 内处理完已排队的消息，再停止处理协程。
        """
        await self.wait_released()
        async with self._lock:
            rooms = list(self._rooms.values())
            self._rooms.clear()
        for room in rooms:
            if room.is_active:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(room.drain(), timeout=settings.SHUTDOWN_DRAIN_SECONDS)
            await room.close()
        logger.info("聊天系统已关闭 | 房间数: %d", len(rooms))
