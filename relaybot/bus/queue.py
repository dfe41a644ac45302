"""用于解耦通道-智能体通信的异步消息队列。"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from relaybot.bus.events import SYSTEM_CHANNEL, InboundMessage, OutboundMessage

OutboundCallback = Callable[[OutboundMessage], Awaitable[None]]


class MessageBus:
    """
    将聊天通道与智能体核心解耦的异步消息总线。
    
    通道把消息推入入站队列，智能体循环逐条消费并把回复推入出站队列。
    子智能体等内部参与者也通过 publish_system_event 重新进入入站队列，
    从而避免与智能体循环之间形成调用栈环路。
    """
    
    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._outbound_subscribers: dict[str, list[OutboundCallback]] = {}
        self._running = False
    
    async def publish_inbound(self, msg: InboundMessage) -> None:
        """向智能体发布一条入站消息。"""
        await self.inbound.put(msg)
    
    async def publish_system_event(
        self,
        sender_id: str,
        origin_channel: str,
        origin_chat_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> InboundMessage:
        """发布一条寻址到 origin_channel:origin_chat_id 的系统事件。"""
        msg = InboundMessage(
            channel=SYSTEM_CHANNEL,
            sender_id=sender_id,
            chat_id=f"{origin_channel}:{origin_chat_id}",
            content=content,
            metadata=dict(metadata or {}),
        )
        await self.publish_inbound(msg)
        return msg
    
    async def consume_inbound(self) -> InboundMessage:
        """消费下一条入站消息（阻塞直到可用）。"""
        return await self.inbound.get()
    
    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """从智能体向通道发布响应。"""
        await self.outbound.put(msg)
    
    async def consume_outbound(self) -> OutboundMessage:
        """消费下一条出站消息（阻塞直到可用）。"""
        return await self.outbound.get()
    
    def subscribe_outbound(self, channel: str, callback: OutboundCallback) -> None:
        """订阅特定通道的出站消息。"""
        self._outbound_subscribers.setdefault(channel, []).append(callback)
    
    async def dispatch_outbound(self) -> None:
        """将出站消息分发给订阅者。作为后台任务运行。"""
        self._running = True
        while self._running:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            subscribers = self._outbound_subscribers.get(msg.channel, [])
            if not subscribers:
                logger.warning(f"通道 {msg.channel} 没有出站订阅者，消息被丢弃")
            for callback in subscribers:
                try:
                    await callback(msg)
                except Exception as e:
                    logger.error(f"分发到 {msg.channel} 时出错：{e}")
    
    def stop(self) -> None:
        """停止分发器循环。"""
        self._running = False
    
    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()
    
    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
