"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

REST 接口的限流配置。

WebSocket 聊天消息不做限流：房间自身的有界队列负责削峰。
"""
from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# 基于客户端 IP 地址进行限流，进程内存存储
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)
