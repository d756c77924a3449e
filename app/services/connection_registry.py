"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接登记表 —— 维护某个房间当前在线的连接集合与广播能力。

只保存在内存中，进程重启后从空集合重建。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """WebSocket 连接登记表。

    每个 ``ChatRoom`` 持有一个独立实例。集合无序，广播顺序不做保证。

    发送失败的连接视为已断开，会被移出集合；其余连接照常收到消息。

    Attributes:
        active_connections: 当前在线的所有 WebSocket 连接。
    """

    def __init__(self) -> None:
        self.active_connections: set[WebSocket] = set()

    def add(self, websocket: WebSocket) -> None:
        """登记一个已完成握手的连接。"""
        self.active_connections.add(websocket)

    def remove(self, websocket: WebSocket) -> None:
        """移除连接，重复移除无副作用。"""
        self.active_connections.discard(websocket)

    def __contains__(self, websocket: object) -> bool:
        return websocket in self.active_connections

    def for_each(self, fn: Callable[[WebSocket], None]) -> None:
        """对每个连接调用 ``fn``，单个连接抛出的异常不会中断遍历。"""
        for ws in list(self.active_connections):
            try:
                fn(ws)
            except Exception as e:
                logger.warning("连接回调异常: %s", e)

    async def send_to(self, websocket: WebSocket, text: str) -> bool:
        """向单个连接发送文本，返回是否成功。失败时移除该连接。"""
        try:
            await websocket.send_text(text)
            return True
        except Exception as e:
            logger.warning("发送失败，移除断开的连接: %s", e)
            self.remove(websocket)
            return False

    async def broadcast(self, text: str) -> int:
        """向所有在线连接并发广播，返回成功送达的连接数。"""
        targets = list(self.active_connections)
        results = await asyncio.gather(
            *(ws.send_text(text) for ws in targets),
            return_exceptions=True,
        )
        delivered = 0
        for ws, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("广播失败，移除断开的连接: %s", result)
                self.remove(ws)
            else:
                delivered += 1
        return delivered

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.active_connections)
