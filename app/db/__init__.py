"""
app.db
~~~~~~

MongoDB 连接管理 —— 聊天室历史存储所用的进程级连接池。

lifespan 启动时 ``connect_mongo()`` 建立连接并 ping 一次，
关闭时 ``close_mongo()`` 释放；其余代码只通过 ``get_database()`` 取库。
"""
from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None
_db_name: str = settings.MONGO_DB_NAME


def mask_uri(uri: str) -> str:
    """隐藏连接串中的密码，用于日志输出。"""
    parts = urlsplit(uri)
    if parts.password is None:
        return uri
    _, _, host = parts.netloc.rpartition("@")
    return urlunsplit(parts._replace(netloc=f"{parts.username}:***@{host}"))


async def connect_mongo(uri: str | None = None, db_name: str | None = None) -> AsyncIOMotorDatabase:
    """建立连接池并 ping 目标库，返回数据库实例。

    重复调用会先关闭旧连接。ping 失败时关闭连接池并向上抛出异常，
    让应用在启动阶段就失败，而不是等到第一次持久化才发现。
    """
    global _client, _db_name
    await close_mongo()

    target_uri = uri or settings.MONGO_URI
    _db_name = db_name or settings.MONGO_DB_NAME
    client = AsyncIOMotorClient(target_uri, serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS)
    try:
        await client[_db_name].command("ping")
    except Exception as e:
        client.close()
        logger.error("MongoDB 连接失败 | uri=%s | %s", mask_uri(target_uri), e, exc_info=True)
        raise

    _client = client
    logger.info("MongoDB 已连接 | uri=%s | db=%s", mask_uri(target_uri), _db_name)
    return _client[_db_name]


async def close_mongo() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


def get_database() -> AsyncIOMotorDatabase:
    """返回当前连接的数据库。

    Raises:
        RuntimeError: 尚未调用 ``connect_mongo()``。
    """
    if _client is None:
        raise RuntimeError("MongoDB 尚未连接")
    return _client[_db_name]
