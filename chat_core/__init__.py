"""Chat Core 顶层包。

该包提供流式聊天客户端的核心实现，
包括配置加载、领域模型、流式补全客户端、错误分类、
用量准入与重置时间计算、会话状态管理与元数据持久化等能力。
"""

from chat_core.api.service import build_conversation_store, list_conversations, send_chat

__all__ = ["build_conversation_store", "list_conversations", "send_chat"]
