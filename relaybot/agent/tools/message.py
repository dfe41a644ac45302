"""用于主动向聊天通道发送消息的工具。"""

from typing import Any, Awaitable, Callable

from relaybot.agent.tools.base import Tool, ToolContext
from relaybot.bus.events import OutboundMessage


class MessageTool(Tool):
    """在聊天通道上向用户发送消息；目标默认为本轮所在的通道/聊天。"""
    
    needs_context = True
    
    def __init__(self, send_callback: Callable[[OutboundMessage], Awaitable[None]] | None = None):
        self._send_callback = send_callback
    
    @property
    def name(self) -> str:
        return "message"
    
    @property
    def description(self) -> str:
        return (
            "向聊天通道发送消息（action=send）。普通回复会自动发送到当前会话，"
            "只有需要发到特定通道/聊天时才使用此工具。"
        )
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["send"], "description": "要执行的操作"},
                "content": {"type": "string", "description": "要发送的消息内容"},
                "message": {"type": "string", "description": "content 的别名"},
                "channel": {"type": "string", "description": "可选：目标通道（telegram、discord 等）"},
                "chat_id": {"type": "string", "description": "可选：目标聊天/用户 ID"},
                "to": {"type": "string", "description": "chat_id 的别名"},
                "reply_to": {"type": "string", "description": "要回复的消息 ID"},
                "silent": {"type": "boolean", "description": "在支持的通道上静默发送（不通知）"},
            },
            "required": [],
        }
    
    async def execute(
        self,
        context: ToolContext,
        action: str = "send",
        content: str | None = None,
        message: str | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
        to: str | None = None,
        reply_to: str | None = None,
        silent: bool | None = None,
        **kwargs: Any,
    ) -> str:
        if action != "send":
            return f"错误：不支持的操作 '{action}'"
        text = content or message or ""
        if not text:
            return "错误：需要 content/message"
        
        channel = channel or context.channel
        chat_id = chat_id or to or context.chat_id
        if not channel or not chat_id:
            return "错误：未指定目标通道/聊天"
        if not self._send_callback:
            return "错误：未配置消息发送"
        
        await self._send_callback(OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=text,
            reply_to=reply_to,
            metadata={"silent": silent} if silent is not None else {},
        ))
        return f"消息已发送到 {channel}:{chat_id}"
