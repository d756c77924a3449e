"""
app.llm.gemini_completion
~~~~~~~~~~~~~~~~~~~~~~~~~

纯 LLM 客户端封装 —— 只负责把带角色的 Prompt 列表发给 Google Gemini 并取回文本。

与直播场景的多轮 chat session 不同，聊天室里每条 ``/ai`` 指令都是一次独立请求，
因此这里使用无状态的 ``models.generate_content``。

调用失败时直接抛出异常，由调用方（``ChatRoom``）决定记录日志并跳过，
不会返回任何兜底文案。
"""
from __future__ import annotations

from google import genai
from google.genai import types

from app.core.config import settings
from app.core.logging import get_logger
from app.llm.client import create_gemini_client
from app.prompts.chat_assistant import PromptSegment

logger = get_logger(__name__)

# Gemini 只接受 user / model 两种对话角色
_ROLE_MAP: dict[str, str] = {"user": "user", "assistant": "model"}


class GeminiCompletionService:
    """Gemini 文本生成服务。

    Attributes:
        model_name: 使用的 Gemini 模型名称。
    """

    def __init__(
        self,
        model_name: str | None = None,
        client: genai.Client | None = None,
    ) -> None:
        """初始化生成服务。

        Args:
            model_name: Gemini 模型名称，默认读取 ``settings.GEMINI_MODEL``。
            client: 可选的 ``genai.Client`` 实例（用于测试注入 mock）。
        """
        self.model_name: str = model_name or settings.GEMINI_MODEL
        self._client: genai.Client = client or create_gemini_client()
        logger.info("AI 生成服务已初始化 | model=%s", self.model_name)

    async def complete(self, segments: list[PromptSegment]) -> str:
        """发送 Prompt 列表并返回生成的文本（已 strip，可能为空字符串）。

        Args:
            segments: 有序的带角色 Prompt 列表，``system`` 段合并为系统指令。

        Raises:
            ValueError: Prompt 列表中没有任何对话内容。
            Exception: Gemini SDK 抛出的任何网络 / 接口异常原样向上传递。
        """
        system_parts = [s["content"] for s in segments if s["role"] == "system"]
        contents = [
            types.Content(
                role=_ROLE_MAP[s["role"]],
                parts=[types.Part.from_text(text=s["content"])],
            )
            for s in segments
            if s["role"] != "system"
        ]
        if not contents:
            raise ValueError("Prompt 列表为空")

        config = types.GenerateContentConfig(
            system_instruction="\n".join(system_parts) if system_parts else None,
        )
        response = await self._client.aio.models.generate_content(
            model=self.model_name,
            contents=contents,
            config=config,
        )
        return (response.text or "").strip()
