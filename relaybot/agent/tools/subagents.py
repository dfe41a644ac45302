"""管理运行中的子智能体：列出、引导、终止。"""

import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from relaybot.agent.tools.base import Tool

if TYPE_CHECKING:
    from relaybot.agent.subagent import SubagentManager


def resolve_target(token: str, runs: list[dict[str, Any]]) -> dict[str, Any] | None:
    """
    把目标解析为一次运行。
    
    支持 "last"（最近启动）、从 1 开始的最近顺序索引、精确 ID，
    以及不区分大小写且唯一的标签。
    """
    token = token.strip()
    if not token:
        return None
    newest_first = sorted(runs, key=lambda r: r["started_at"], reverse=True)
    if token == "last":
        return newest_first[0] if newest_first else None
    if token.isdigit():
        index = int(token)
        if 0 < index <= len(newest_first):
            return newest_first[index - 1]
    for run in runs:
        if run["id"] == token:
            return run
    by_label = [run for run in runs if run["label"].lower() == token.lower()]
    return by_label[0] if len(by_label) == 1 else None


class SubagentsTool(Tool):
    """list / steer / kill 子智能体。"""
    
    def __init__(self, manager: "SubagentManager"):
        self._manager = manager
    
    @property
    def name(self) -> str:
        return "subagents"
    
    @property
    def description(self) -> str:
        return "管理运行中的子智能体（list/steer/kill）。不要循环轮询，只在需要时查看。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list", "kill", "steer"], "description": "要执行的操作"},
                "target": {"type": "string", "description": "目标（id / 标签 / last / 序号）"},
                "id": {"type": "string", "description": "target 的别名"},
                "message": {"type": "string", "description": "给运行中子智能体的引导说明"},
                "note": {"type": "string", "description": "message 的别名"},
                "recent_minutes": {"type": "integer", "minimum": 1, "description": "只列出最近 N 分钟内的运行"},
            },
            "required": ["action"],
        }
    
    async def execute(
        self,
        action: str,
        target: str | None = None,
        id: str | None = None,
        message: str | None = None,
        note: str | None = None,
        recent_minutes: int | None = None,
        **kwargs: Any,
    ) -> str:
        runs = self._manager.list_runs()
        
        if action == "list":
            if recent_minutes:
                cutoff = datetime.now() - timedelta(minutes=recent_minutes)
                runs = [
                    run for run in runs
                    if datetime.fromisoformat(run["finished_at"] or run["started_at"]) >= cutoff
                ]
            return json.dumps({"runs": runs}, ensure_ascii=False, indent=2)
        
        token = (target or id or "").strip()
        if action == "kill":
            if not token:
                return "错误：kill 需要 target"
            run = resolve_target(token, runs)
            if not run:
                return f"错误：未找到子智能体（{token}）"
            if self._manager.cancel_run(run["id"]):
                return f"子智能体 {run['id']} 已终止"
            return f"子智能体 {run['id']} 未在运行"
        
        if action == "steer":
            text = (message or note or "").strip()
            if not token or not text:
                return "错误：steer 需要 target 和 message"
            run = resolve_target(token, runs)
            if not run:
                return f"错误：未找到子智能体（{token}）"
            if self._manager.steer_run(run["id"], text):
                return f"子智能体 {run['id']} 已收到引导"
            return f"子智能体 {run['id']} 未在运行"
        
        return "错误：无效的操作"
