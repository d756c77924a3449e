"""
app.prompts.chat_assistant
~~~~~~~~~~~~~~~~~~~~~~~~~~

聊天室 AI 助手的指令解析与 Prompt 构建工具。
"""
from __future__ import annotations

from typing import Literal, TypedDict

from app.core.config import settings

PromptRole = Literal["system", "user", "assistant"]


class PromptSegment(TypedDict):
    """一段带角色标签的 Prompt。"""

    role: PromptRole
    content: str


def extract_ai_prompt(body: str, prefix: str | None = None) -> str | None:
    """如果消息正文以 AI 指令前缀开头，返回去掉前缀并 strip 后的 Prompt。

    Args:
        body: 聊天消息正文。
        prefix: 指令前缀，默认读取 ``settings.AI_COMMAND_PREFIX``（``"/ai "``）。

    Returns:
        Prompt 文本；不是 AI 指令时返回 ``None``。可能返回空字符串。
    """
    command = prefix if prefix is not None else settings.AI_COMMAND_PREFIX
    if not body.startswith(command):
        return None
    return body[len(command):].strip()


def build_ai_messages(prompt: str, system_prompt: str | None = None) -> list[PromptSegment]:
    """组装发送给 AI 服务的有序 Prompt 列表：固定系统指令 + 用户 Prompt。"""
    return [
        {"role": "system", "content": system_prompt or settings.AI_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
