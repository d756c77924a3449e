"""
app.api.rooms
~~~~~~~~~~~~~

聊天室 REST 接口 —— 房间查看 + 近期历史。

只读取当前活跃（有连接）的房间，不会因为查询而创建或加载房间；
房间不存在时返回 404。

端点:
  - ``GET /rooms``                       → 获取活跃房间列表
  - ``GET /rooms/{room_name}``           → 获取房间详情
  - ``GET /rooms/{room_name}/history``   → 获取房间当前保留的近期历史
"""
from fastapi import APIRouter, Depends, Request

from app.api.deps import get_chat_system
from app.core.config import settings
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.chat_messages import HistoryResponseData, RoomInfoData
from app.services.chat_system import ChatSystem

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit(settings.API_RATE_LIMIT)
async def list_rooms(request: Request, system: ChatSystem = Depends(get_chat_system)):
    """返回当前进程内所有活跃的聊天室。"""
    return ApiResponse.ok(data=system.list_rooms())


@router.get("/rooms/{room_name}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit(settings.API_RATE_LIMIT)
async def room_info(request: Request, room_name: str, system: ChatSystem = Depends(get_chat_system)):
    """返回指定聊天室的在线人数与历史条数。"""
    room = system.require_room(room_name)
    return ApiResponse.ok(data=room.info())


@router.get(
    "/rooms/{room_name}/history",
    summary="获取近期历史",
    response_model=ApiResponse[HistoryResponseData],
)
@limiter.limit(settings.API_RATE_LIMIT)
async def get_history(request: Request, room_name: str, system: ChatSystem = Depends(get_chat_system)):
    """返回房间当前保留的近期消息（按到达顺序，最旧在前）。"""
    room = system.require_room(room_name)
    messages = room.history.messages
    return ApiResponse.ok(
        data=HistoryResponseData(
            room_name=room_name,
            messages=messages,
            total=len(messages),
        ),
    )
