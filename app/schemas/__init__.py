"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.chat_messages import (
    ChatEnvelope,
    ChatMessage,
    HistoryResponseData,
    InboundChat,
    RoomInfoData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = [
    "ApiResponse",
    "ChatEnvelope",
    "ChatMessage",
    "HistoryResponseData",
    "InboundChat",
    "RoomInfoData",
]
