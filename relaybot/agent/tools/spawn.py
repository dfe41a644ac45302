"""用于创建后台子智能体的生成工具。"""

from typing import TYPE_CHECKING, Any

from relaybot.agent.tools.base import Tool, ToolContext

if TYPE_CHECKING:
    from relaybot.agent.subagent import SubagentManager


class SpawnTool(Tool):
    """
    生成子智能体以执行后台任务。
    
    子智能体独立运行，完成后把结果通知回发起本轮对话的通道/聊天。
    """
    
    needs_context = True
    
    def __init__(self, manager: "SubagentManager"):
        self._manager = manager
    
    @property
    def name(self) -> str:
        return "spawn"
    
    @property
    def description(self) -> str:
        return (
            "生成一个子智能体来在后台处理任务。"
            "用于可以独立运行的复杂或耗时任务，子智能体完成后会报告结果。"
        )
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "子智能体要完成的任务"},
                "label": {"type": "string", "description": "任务的可选简短标签（用于显示）"},
            },
            "required": ["task"],
        }
    
    async def execute(self, context: ToolContext, task: str, label: str | None = None, **kwargs: Any) -> str:
        return await self._manager.spawn(
            task=task,
            label=label,
            origin_channel=context.channel,
            origin_chat_id=context.chat_id,
        )
