"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口统一应答体。

WebSocket 帧不走这里（见 ``chat_messages.ChatEnvelope``），
只有 ``/api/rooms`` 系列接口和全局异常处理器使用。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

SUCCESS_CODE = 200


class ApiResponse(BaseModel, Generic[T]):
    """``{"code": 200, "data": {...}, "msg": "success"}``

    ``code`` 与 HTTP 状态码保持一致，失败时 ``data`` 通常为 ``None``。
    """

    code: int = Field(default=SUCCESS_CODE, description="业务状态码，与 HTTP 状态码一致")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=SUCCESS_CODE, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str, code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)
