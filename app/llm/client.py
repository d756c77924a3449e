"""
app.llm.client
~~~~~~~~~~~~~~

Gemini API 客户端工厂 —— 全局共享的客户端创建入口。
"""
from __future__ import annotations

from google import genai

from app.core.config import settings


def create_gemini_client(api_key: str | None = None) -> genai.Client:
    """创建 Gemini API 客户端实例。

    Args:
        api_key: 可选的 API Key，默认读取 ``settings.GEMINI_API_KEY``。

    Returns:
        已认证的 ``genai.Client``。

    Raises:
        RuntimeError: 未配置 API Key。
    """
    key = api_key or settings.GEMINI_API_KEY
    if not key:
        raise RuntimeError("未配置 GEMINI_API_KEY，无法创建 Gemini 客户端")
    return genai.Client(api_key=key)
