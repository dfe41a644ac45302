"""
relaybot - 将聊天消息转为 LLM 工具调用轮次的个人助理网关。
"""

__version__ = "0.1.0"
__logo__ = "🛰️"
