"""用于解耦通道与智能体的消息总线模块。"""

from relaybot.bus.events import InboundMessage, OutboundMessage
from relaybot.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
