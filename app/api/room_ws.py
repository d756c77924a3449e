"""
app.api.room_ws
~~~~~~~~~~~~~~~

WebSocket 实时聊天接口 —— 按路径中的房间名把连接转交给对应的 ``ChatRoom``。

提供 ``/ws/rooms/{room_name}`` 端点（``/ws/rooms`` 进入默认房间）。
同一路径上的普通 HTTP GET（未升级）返回 ``400 Expected WebSocket``。

消息协议（JSON 文本帧）:
  - 客户端发送 ``{"username": "...", "message": "..."}``；以 ``/ai `` 开头的消息会触发 AI 回复
  - 客户端发送 ``{"type": "init"}`` 可重新获取历史
  - 服务端下发 ``{"type": "init", "payload": [...]}`` —— 加入时的历史回放（最旧在前）
  - 服务端下发 ``{"type": "message", "payload": [msg]}`` —— 新消息广播
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Request, WebSocket, status

from app.core.config import settings
from app.core.logging import get_logger, request_id_ctx_var
from app.services.chat_room import BadRequestError, RoomClosedError, ensure_websocket_upgrade
from app.services.chat_system import ChatSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()


async def _serve_room(websocket: WebSocket, room_name: str) -> None:
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        system: ChatSystem = websocket.app.state.chat_system
        room = await system.get_room(room_name)
        try:
            await room.accept_connection(websocket)
        except RoomClosedError:
            # 握手期间房间因空闲被回收，改为加入重新激活的实例
            logger.info("房间已回收，重新加入 | room=%s", room_name)
            room = await system.get_room(room_name)
            try:
                await room.admit(websocket)
            except RoomClosedError:
                logger.warning("房间不可用，关闭连接 | room=%s", room_name)
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    room.on_close(websocket)
                    break
                raw_frame = message.get("text")
                if raw_frame is None:
                    raw_frame = message.get("bytes")
                if raw_frame is not None:
                    room.on_message(websocket, raw_frame)
        except Exception as e:
            logger.error("WebSocket 接收异常: %s | room=%s", e, room_name, exc_info=True)
            room.on_error(websocket)
    finally:
        request_id_ctx_var.reset(token)


@router.websocket("/ws/rooms/{room_name}")
async def websocket_room_endpoint(websocket: WebSocket, room_name: str) -> None:
    """WebSocket 聊天室端点，通过 URL 中的 ``room_name`` 加入指定房间。"""
    await _serve_room(websocket, room_name)


@router.websocket("/ws/rooms")
async def websocket_default_room_endpoint(websocket: WebSocket) -> None:
    """未指定房间名时进入默认房间。"""
    await _serve_room(websocket, settings.DEFAULT_ROOM_NAME)


@router.get("/ws/rooms/{room_name}", include_in_schema=False)
@router.get("/ws/rooms", include_in_schema=False)
async def reject_plain_http(request: Request) -> None:
    """WebSocket 路径上的普通 HTTP 请求一律以 400 拒绝。"""
    ensure_websocket_upgrade(request)
    # 带着升级头却走到 HTTP 路由，说明 ASGI 服务器没有启用 WebSocket 支持
    raise BadRequestError("WebSocket upgrade not supported by server")
