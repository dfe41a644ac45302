"""用于后台任务执行的子智能体管理器。"""

import asyncio
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.agent.tools.filesystem import ListDirTool, ReadFileTool, WriteFileTool
from relaybot.agent.tools.registry import ToolRegistry
from relaybot.agent.tools.shell import ExecTool
from relaybot.agent.tools.web import WebFetchTool, WebSearchTool
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import ExecToolConfig
from relaybot.providers.base import LLMProvider

NO_FINAL_RESPONSE = "任务已完成但未生成最终响应。"


class SubagentStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class CancelToken:
    """协作式取消令牌：由 cancel_run 设置，由运行中的任务在检查点读取。"""
    
    def __init__(self) -> None:
        self._cancelled = False
    
    def cancel(self) -> None:
        self._cancelled = True
    
    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class SubagentRun:
    """一次子智能体运行。保留到进程结束以便查询。"""
    id: str
    label: str
    task: str
    origin_channel: str
    origin_chat_id: str
    status: SubagentStatus = SubagentStatus.RUNNING
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    result: str | None = None
    token: CancelToken = field(default_factory=CancelToken, repr=False)
    steer_queue: deque[str] = field(default_factory=deque, repr=False)
    
    @property
    def is_running(self) -> bool:
        return self.status == SubagentStatus.RUNNING
    
    def finish(self, status: SubagentStatus, result: str | None = None) -> None:
        """状态只能从 running 迁移一次；已取消的运行不会被覆盖。"""
        if not self.is_running:
            return
        self.status = status
        self.result = result
        self.finished_at = datetime.now()
    
    def drain_steering(self) -> list[str]:
        notes = list(self.steer_queue)
        self.steer_queue.clear()
        return notes
    
    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "task": self.task,
            "status": self.status.value,
            "origin": f"{self.origin_channel}:{self.origin_chat_id}",
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "pending_steer": len(self.steer_queue),
        }


class SubagentManager:
    """
    管理后台子智能体的执行。
    
    子智能体是轻量级的智能体实例：共享同一个 LLM 提供商，但拥有隔离的消息状态、
    更小的工具集（无消息工具、无生成工具）和专注于单一任务的系统提示。
    完成后通过总线发布一条系统入站事件，由智能体循环按普通轮次协议向用户汇报。
    """
    
    def __init__(
        self,
        provider: LLMProvider,
        workspace: Path,
        bus: MessageBus,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_iterations: int = 15,
        brave_api_key: str | None = None,
        search_max_results: int = 5,
        exec_config: ExecToolConfig | None = None,
        restrict_to_workspace: bool = False,
    ):
        self.provider = provider
        self.workspace = workspace
        self.bus = bus
        self.model = model or provider.get_default_model()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.brave_api_key = brave_api_key
        self.search_max_results = search_max_results
        self.exec_config = exec_config or ExecToolConfig()
        self.restrict_to_workspace = restrict_to_workspace
        self._runs: dict[str, SubagentRun] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
    
    async def spawn(
        self,
        task: str,
        label: str | None = None,
        origin_channel: str = "cli",
        origin_chat_id: str = "direct",
    ) -> str:
        """
        生成一个子智能体在后台执行任务，立即返回。
        
        参数:
            task: 子智能体的任务描述。
            label: 任务的可选人类可读标签。
            origin_channel: 要将结果通知到的通道。
            origin_chat_id: 要将结果通知到的聊天 ID。
        
        返回:
            包含运行 ID 的确认消息。
        """
        run_id = uuid.uuid4().hex[:8]
        display_label = label or task[:30] + ("..." if len(task) > 30 else "")
        run = SubagentRun(
            id=run_id,
            label=display_label,
            task=task,
            origin_channel=origin_channel,
            origin_chat_id=origin_chat_id,
        )
        self._runs[run_id] = run
        
        bg_task = asyncio.create_task(self._run_subagent(run, run.token))
        self._tasks[run_id] = bg_task
        bg_task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        
        logger.info(f"已生成子智能体 [{run_id}]：{display_label}")
        return f"子智能体 [{display_label}] 已启动（id：{run_id}）。完成后我会通知您。"
    
    def steer_run(self, run_id: str, note: str) -> bool:
        """向运行中的子智能体追加一条引导说明，下一轮开始时注入。"""
        run = self._runs.get(run_id)
        note = note.strip()
        if not run or not run.is_running or run.token.cancelled or not note:
            return False
        run.steer_queue.append(note)
        logger.info(f"子智能体 [{run_id}] 收到引导：{note[:80]}")
        return True
    
    def cancel_run(self, run_id: str) -> bool:
        """协作式取消：设置令牌并立即记录为 cancelled，之后不会再通知结果。"""
        run = self._runs.get(run_id)
        if not run or not run.is_running:
            return False
        run.token.cancel()
        run.finish(SubagentStatus.CANCELLED)
        logger.info(f"子智能体 [{run_id}] 已取消")
        return True
    
    def get_run(self, run_id: str) -> SubagentRun | None:
        return self._runs.get(run_id)
    
    def list_runs(self) -> list[dict[str, Any]]:
        """按启动时间排序的运行快照。"""
        return [run.snapshot() for run in sorted(self._runs.values(), key=lambda r: r.started_at)]
    
    def get_running_count(self) -> int:
        return sum(1 for run in self._runs.values() if run.is_running)
    
    async def _run_subagent(self, run: SubagentRun, token: CancelToken) -> None:
        """执行子智能体任务并通知结果。"""
        if token.cancelled:
            return
        logger.info(f"子智能体 [{run.id}] 正在启动任务：{run.label}")
        
        try:
            tools = self._build_tools()
            messages: list[dict[str, Any]] = [
                {"role": "system", "content": self._build_subagent_prompt(run.task)},
                {"role": "user", "content": run.task},
            ]
            final_result: str | None = None
            
            for _ in range(self.max_iterations):
                if token.cancelled:
                    return
                for note in run.drain_steering():
                    logger.debug(f"子智能体 [{run.id}] 注入引导：{note[:80]}")
                    messages.append({"role": "user", "content": f"Steer: {note}"})
                
                response = await self.provider.chat(
                    messages=messages,
                    tools=tools.get_definitions(),
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                )
                
                if not response.has_tool_calls:
                    final_result = response.content
                    break
                
                assistant: dict[str, Any] = {
                    "role": "assistant",
                    "content": response.content or "",
                    "tool_calls": [tc.to_openai() for tc in response.tool_calls],
                }
                if response.reasoning_content:
                    assistant["reasoning_content"] = response.reasoning_content
                messages.append(assistant)
                
                for tool_call in response.tool_calls:
                    logger.debug(
                        f"子智能体 [{run.id}] 正在执行：{tool_call.name} "
                        f"参数：{json.dumps(tool_call.arguments, ensure_ascii=False)[:200]}"
                    )
                    result = await tools.execute(tool_call.name, tool_call.arguments)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": tool_call.id,
                        "name": tool_call.name,
                        "content": result,
                    })
            
            if token.cancelled:
                return
            final_result = final_result or NO_FINAL_RESPONSE
            run.finish(SubagentStatus.DONE, final_result)
            logger.info(f"子智能体 [{run.id}] 成功完成")
            await self._announce_result(run, final_result, ok=True)
        
        except Exception as e:
            if token.cancelled:
                return
            error_msg = f"错误：{e}"
            run.finish(SubagentStatus.ERROR, error_msg)
            logger.error(f"子智能体 [{run.id}] 失败：{e}")
            await self._announce_result(run, error_msg, ok=False)
    
    def _build_tools(self) -> ToolRegistry:
        """子智能体的隔离工具集：文件读写、shell、web；不含消息与生成工具。"""
        tools = ToolRegistry()
        allowed_dir = self.workspace if self.restrict_to_workspace else None
        tools.register(ReadFileTool(workspace=self.workspace, allowed_dir=allowed_dir))
        tools.register(WriteFileTool(workspace=self.workspace, allowed_dir=allowed_dir))
        tools.register(ListDirTool(workspace=self.workspace, allowed_dir=allowed_dir))
        tools.register(ExecTool(
            working_dir=str(self.workspace),
            timeout=self.exec_config.timeout,
            restrict_to_workspace=self.restrict_to_workspace,
        ))
        tools.register(WebSearchTool(api_key=self.brave_api_key, max_results=self.search_max_results))
        tools.register(WebFetchTool())
        return tools
    
    async def _announce_result(self, run: SubagentRun, result: str, ok: bool) -> None:
        """以系统入站事件的形式把结果送回发起会话。"""
        if run.token.cancelled:
            return
        status_text = "成功完成" if ok else "失败"
        content = f"""[子智能体 '{run.label}' {status_text}]

任务：{run.task}

结果：
{result}

为用户自然地总结这一点。保持简短（1-2 句话）。不要提及"子智能体"或任务 ID 等技术细节。"""
        
        await self.bus.publish_system_event(
            sender_id="subagent",
            origin_channel=run.origin_channel,
            origin_chat_id=run.origin_chat_id,
            content=content,
            metadata={"subagent_id": run.id, "subagent_status": run.status.value},
        )
        logger.debug(f"子智能体 [{run.id}] 已将结果通知到 {run.origin_channel}:{run.origin_chat_id}")
    
    def _build_subagent_prompt(self, task: str) -> str:
        """为子智能体构建专注的系统提示。"""
        return f"""# 子智能体

你是主智能体生成的子智能体，用于完成一项特定任务。

## 你的任务
{task}

## 规则
1. 保持专注：只完成分配的任务，不做其他事情
2. 你的最终响应将报告回主智能体
3. 不要发起对话或承担其他任务
4. 如果收到以 "Steer:" 开头的用户消息，按其中的说明调整做法
5. 在你的发现中要简洁但信息丰富

## 你能做什么
- 在工作区中读取和写入文件
- 执行 shell 命令
- 搜索网络和获取网页

## 你不能做什么
- 直接向用户发送消息（没有可用的消息工具）
- 生成其他子智能体
- 访问主智能体的对话历史

## 工作区
你的工作区位于：{self.workspace}

完成任务后，清晰地总结你的发现或操作。"""
