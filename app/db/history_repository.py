"""
app.db.history_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

房间历史持久化仓库 —— 封装 MongoDB ``room_history`` 集合。

每个房间一个文档，``messages`` 字段保存整段近期历史（有界，最多几十条），
每次写入整体覆盖，不做增量追加::

    {"_id": "<room_name>", "messages": [...], "updated_at": datetime}
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "room_history"
# 文档内保存历史列表的固定键
HISTORY_KEY = "messages"


class MongoHistoryStore:
    """按房间名隔离的历史存储。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def get(self, room_name: str) -> list[dict[str, Any]] | None:
        """读取房间的历史列表，不存在时返回 ``None``。"""
        doc = await self._collection.find_one({"_id": room_name}, {HISTORY_KEY: 1})
        if doc is None:
            return None
        return doc.get(HISTORY_KEY)

    async def put(self, room_name: str, messages: list[dict[str, Any]]) -> None:
        """整体覆盖房间的历史列表。"""
        await self._collection.replace_one(
            {"_id": room_name},
            {
                HISTORY_KEY: messages,
                "updated_at": datetime.now(timezone.utc),
            },
            upsert=True,
        )
        logger.debug("历史已写入 | room=%s | count=%d", room_name, len(messages))
