"""消息总线的事件类型。"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# 内部生成的事件（子智能体通知、重启唤醒、跨会话交接）使用此通道名
SYSTEM_CHANNEL = "system"


@dataclass
class InboundMessage:
    """从聊天通道（或系统内部）接收的消息。"""
    
    channel: str  # telegram、discord、slack、system ...
    sender_id: str  # 用户标识符
    chat_id: str  # 聊天标识符；系统事件为 "origin_channel:origin_chat_id"
    content: str  # 消息文本
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)  # 附件（本地路径或 URL）
    metadata: dict[str, Any] = field(default_factory=dict)  # 模型覆盖、回复提示、协议子对象
    
    @property
    def session_key(self) -> str:
        """会话标识的唯一键。"""
        return f"{self.channel}:{self.chat_id}"
    
    @property
    def is_system(self) -> bool:
        return self.channel == SYSTEM_CHANNEL
    
    @property
    def message_id(self) -> str | None:
        """触发本轮的消息 ID（如果通道提供了的话）。"""
        for key in ("message_id", "messageId"):
            value = self.metadata.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None


@dataclass
class OutboundMessage:
    """要发送到聊天通道的消息。"""
    
    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None  # 回复特定消息
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)  # 透传的通道数据


def split_origin(chat_id: str, default_channel: str = "cli") -> tuple[str, str]:
    """将系统事件的 chat_id（"channel:chat_id"）拆分为源通道和源聊天。"""
    if ":" in chat_id:
        channel, origin_chat_id = chat_id.split(":", 1)
        if channel and origin_chat_id:
            return channel, origin_chat_id
    return default_channel, chat_id
