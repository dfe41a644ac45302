"""用于动态工具管理的工具注册表。"""

from typing import Any

from loguru import logger

from relaybot.agent.tools.base import Tool, ToolContext


class ToolRegistry:
    """
    智能体工具的注册表。
    
    execute 永远不会抛出异常：未知工具、参数错误和执行异常都转换为文本结果。
    """
    
    def __init__(self):
        self._tools: dict[str, Tool] = {}
    
    def register(self, tool: Tool) -> None:
        """注册一个工具（同名覆盖）。"""
        self._tools[tool.name] = tool
    
    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
    
    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)
    
    def has(self, name: str) -> bool:
        return name in self._tools
    
    def get_definitions(self) -> list[dict[str, Any]]:
        """获取 OpenAI 格式的所有工具定义。"""
        return [tool.to_schema() for tool in self._tools.values()]
    
    def set_context(self, context: ToolContext) -> None:
        """把本轮路由上下文推送给暴露了 set_context 的工具（插件等外部工具）。"""
        for tool in self._tools.values():
            setter = getattr(tool, "set_context", None)
            if callable(setter):
                try:
                    setter(context)
                except Exception as e:
                    logger.warning(f"为工具 {tool.name} 设置上下文失败：{e}")
    
    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        context: ToolContext | None = None,
    ) -> str:
        """
        按名称执行工具。
        
        参数:
            name: 工具名称。
            params: 工具参数。
            context: 本轮路由上下文，只传给 needs_context 的工具。
        
        返回:
            工具执行结果（字符串形式）。
        """
        tool = self._tools.get(name)
        if not tool:
            return f"错误：未找到工具 '{name}'"

        try:
            params = dict(params or {})
            if tool.needs_context:
                params.pop("context", None)
            errors = tool.validate_params(params)
            if errors:
                return f"错误：工具 '{name}' 的参数无效：" + "; ".join(errors)
            if tool.needs_context:
                return await tool.execute(context=context or ToolContext(), **params)
            return await tool.execute(**params)
        except Exception as e:
            return f"执行 {name} 时出错：{str(e)}"
    
    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())
    
    def __len__(self) -> int:
        return len(self._tools)
    
    def __contains__(self, name: str) -> bool:
        return name in self._tools
