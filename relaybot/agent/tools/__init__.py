"""智能体工具模块。"""

from relaybot.agent.tools.base import Tool, ToolContext
from relaybot.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolRegistry"]
