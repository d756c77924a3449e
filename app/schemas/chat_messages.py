"""
app.schemas.chat_messages
~~~~~~~~~~~~~~~~~~~~~~~~~

聊天室相关的 Pydantic 模型 —— WebSocket 帧结构与 REST 响应数据。

线上协议（JSON 文本帧）:
  - 客户端 → 服务端: ``{"username": str, "message": str}``
  - 服务端 → 客户端: ``{"type": "init" | "message", "payload": [ChatMessage, ...]}``
"""
from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

AI_USERNAME: str = "AI"

EnvelopeType = Literal["init", "message"]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatMessage(BaseModel):
    """一条聊天记录。写入历史后不可再修改。"""

    model_config = ConfigDict(frozen=True)

    username: str = Field(..., min_length=1, description="发送者名称")
    message: str = Field(..., description="消息正文")
    timestamp: int = Field(
        default_factory=_now_ms,
        description="服务端创建时间（毫秒时间戳），仅供展示，不参与排序",
    )


class InboundChat(BaseModel):
    """客户端发来的聊天消息，严格校验字段类型（不做数字转字符串）。"""

    model_config = ConfigDict(strict=True, extra="ignore")

    username: str = Field(..., min_length=1)
    message: str

    def to_message(self) -> ChatMessage:
        """以服务端时间戳生成正式的聊天记录。"""
        return ChatMessage(username=self.username, message=self.message)


class ChatEnvelope(BaseModel):
    """服务端下发帧。``init`` 为历史批量回放，``message`` 为单条新消息。"""

    type: EnvelopeType
    payload: list[ChatMessage] = Field(default_factory=list)

    @classmethod
    def history(cls, messages: list[ChatMessage]) -> ChatEnvelope:
        return cls(type="init", payload=list(messages))

    @classmethod
    def single(cls, message: ChatMessage) -> ChatEnvelope:
        return cls(type="message", payload=[message])


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_name: str = Field(..., description="房间名称")
    online_count: int = Field(..., description="当前在线连接数")
    history_size: int = Field(..., description="当前保留的历史消息条数")


class HistoryResponseData(BaseModel):
    """房间近期历史响应数据。"""

    room_name: str = Field(..., description="房间名称")
    messages: list[ChatMessage] = Field(..., description="消息列表（按到达顺序）")
    total: int = Field(..., description="本次返回条数")
