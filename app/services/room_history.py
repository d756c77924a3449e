"""
app.services.room_history
~~~~~~~~~~~~~~~~~~~~~~~~~

房间近期历史 —— 有界 FIFO 缓冲区 + 持久化镜像。

``HistoryBuffer`` 只负责内存中的有序、有界序列，与网络和存储无关；
``RoomHistory`` 在其之上对接 ``HistoryStore``，负责启动加载与整体写回。
存储只提供尽力而为的持久性：读写失败都只记录日志，内存中的缓冲区始终是权威数据。
"""
from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Any, Protocol

from pydantic import ValidationError

from app.core.logging import get_logger
from app.schemas.chat_messages import ChatMessage

logger = get_logger(__name__)

MAX_HISTORY: int = 10


class HistoryStore(Protocol):
    """按房间隔离的历史存储端口（get / put 单个列表）。"""

    async def get(self, room_name: str) -> list[dict[str, Any]] | None: ...

    async def put(self, room_name: str, messages: list[dict[str, Any]]) -> None: ...


class HistoryBuffer:
    """有序有界的消息序列：尾部追加，超出容量时从头部淘汰。

    构造时传入的初始序列即使超过容量也原样保留，直到下一次 ``append`` 才截断。
    """

    def __init__(self, capacity: int = MAX_HISTORY, initial: Iterable[ChatMessage] = ()) -> None:
        if capacity < 1:
            raise ValueError("capacity 必须为正整数")
        self.capacity = capacity
        self._items: deque[ChatMessage] = deque(initial)

    def append(self, message: ChatMessage) -> list[ChatMessage]:
        """追加一条消息，返回被淘汰的消息（正常情况下至多一条）。"""
        self._items.append(message)
        evicted: list[ChatMessage] = []
        while len(self._items) > self.capacity:
            evicted.append(self._items.popleft())
        return evicted

    def snapshot(self) -> list[ChatMessage]:
        """按到达顺序（最旧在前）返回当前内容的副本。"""
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.snapshot())


class RoomHistory:
    """单个房间的历史缓冲区及其持久化。

    Attributes:
        room_name: 房间名称，同时作为存储键的命名空间。
        store: 持久化存储实现。
    """

    def __init__(
        self,
        room_name: str,
        store: HistoryStore,
        capacity: int = MAX_HISTORY,
    ) -> None:
        self.room_name = room_name
        self.store = store
        self._buffer = HistoryBuffer(capacity)

    @property
    def messages(self) -> list[ChatMessage]:
        return self._buffer.snapshot()

    def __len__(self) -> int:
        return len(self._buffer)

    async def load(self) -> list[ChatMessage]:
        """从存储加载历史并替换内存缓冲区。

        存储中无记录或读取失败时返回空列表；无法解析的单条记录会被跳过。
        """
        try:
            raw = await self.store.get(self.room_name)
        except Exception as e:
            logger.warning("历史加载失败，使用空历史 | room=%s | %s", self.room_name, e, exc_info=True)
            raw = None

        if raw is not None and not isinstance(raw, list):
            logger.warning(
                "历史记录格式异常（%s），使用空历史 | room=%s", type(raw).__name__, self.room_name,
            )
            raw = None

        loaded: list[ChatMessage] = []
        for item in raw or []:
            try:
                loaded.append(ChatMessage.model_validate(item))
            except ValidationError as e:
                logger.warning("跳过无法解析的历史记录 | room=%s | %s", self.room_name, e)

        self._buffer = HistoryBuffer(self._buffer.capacity, loaded)
        logger.info("历史已加载 | room=%s | count=%d", self.room_name, len(loaded))
        return self.messages

    def append(self, message: ChatMessage) -> None:
        """追加到内存缓冲区，超出容量时淘汰最旧的消息。"""
        evicted = self._buffer.append(message)
        if evicted:
            logger.debug("淘汰 %d 条旧消息 | room=%s", len(evicted), self.room_name)

    async def persist(self) -> bool:
        """将当前完整序列写回存储（整体覆盖），返回是否成功。失败只记录日志。"""
        payload = [m.model_dump(mode="json") for m in self._buffer]
        try:
            await self.store.put(self.room_name, payload)
            return True
        except Exception as e:
            logger.warning("历史持久化失败 | room=%s | %s", self.room_name, e, exc_info=True)
            return False
