"""智能体循环：核心处理引擎。"""

import asyncio
import json
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.bus.events import InboundMessage, OutboundMessage, split_origin
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import Config, ContextBudgetConfig, ExecToolConfig
from relaybot.providers.base import LLMProvider
from relaybot.agent.budget import InputBudgetPruner
from relaybot.agent.context import ContextBuilder
from relaybot.agent.delivery import build_delivery_context, update_delivery_context
from relaybot.agent.directives import parse_reply_directives
from relaybot.agent.tokens import apply_silent_reply_policy, contains_silent_marker
from relaybot.agent.tools.base import ToolContext
from relaybot.agent.tools.registry import ToolRegistry
from relaybot.agent.tools.filesystem import ReadFileTool, WriteFileTool, EditFileTool, ListDirTool
from relaybot.agent.tools.shell import ExecTool
from relaybot.agent.tools.web import WebSearchTool, WebFetchTool
from relaybot.agent.tools.message import MessageTool
from relaybot.agent.tools.spawn import SpawnTool
from relaybot.agent.tools.subagents import SubagentsTool
from relaybot.agent.tools.sessions import SessionsListTool, SessionsHistoryTool, SessionsSendTool
from relaybot.agent.subagent import SubagentManager
from relaybot.session.manager import Session, SessionManager, drain_pending_system_events
from relaybot.utils.helpers import preview

PREFERRED_MODEL_KEY = "preferred_model"
MODEL_OVERRIDE_KEYS = ("model", "model_override", "modelOverride", "preferred_model")
MODEL_RESET_KEYS = ("clear_model", "reset_model", "model_reset")
APOLOGY_TEMPLATE = "抱歉，我遇到了错误：{error}"


@dataclass
class TurnRoute:
    """一轮对话的目的地：回复发往哪里、写入哪个会话。"""
    channel: str
    chat_id: str
    session_key: str
    handoff_depth: int = 0


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class AgentLoop:
    """
    智能体循环是核心处理引擎。

    它：
    1. 从总线接收消息（用户消息与系统事件）
    2. 解析路由、模型偏好和待处理的系统事件
    3. 构建上下文并在每次调用前裁剪到输入预算内
    4. 调用 LLM、执行工具调用
    5. 解析回复指令、应用静默策略并发送响应

    同一会话的轮次串行执行，不同会话互不阻塞。
    """

    def __init__(
        self,
        bus: MessageBus,
        provider: LLMProvider,
        workspace: Path,
        model: str | None = None,
        max_iterations: int = 20,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        context_budget: ContextBudgetConfig | None = None,
        brave_api_key: str | None = None,
        search_max_results: int = 5,
        exec_config: ExecToolConfig | None = None,
        restrict_to_workspace: bool = False,
        session_manager: SessionManager | None = None,
        agent_id: str = "main",
        max_ping_pong_turns: int = 5,
        history_limit: int = 50,
        subagent_max_iterations: int = 15,
    ):
        self.bus = bus
        self.provider = provider
        self.workspace = workspace
        self.model = model or provider.get_default_model()
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.context_budget = context_budget or ContextBudgetConfig()
        self.brave_api_key = brave_api_key
        self.search_max_results = search_max_results
        self.exec_config = exec_config or ExecToolConfig()
        self.restrict_to_workspace = restrict_to_workspace
        self.agent_id = agent_id
        self.max_ping_pong_turns = max_ping_pong_turns
        self.history_limit = history_limit

        self.context = ContextBuilder(workspace)
        self.sessions = session_manager or SessionManager(workspace)
        self.pruner = InputBudgetPruner()
        self.tools = ToolRegistry()
        self.subagents = SubagentManager(
            provider=provider,
            workspace=workspace,
            bus=bus,
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            max_iterations=subagent_max_iterations,
            brave_api_key=brave_api_key,
            search_max_results=search_max_results,
            exec_config=self.exec_config,
            restrict_to_workspace=restrict_to_workspace,
        )

        self._running = False
        # 锁只在有轮次持有或等待时存活
        self._session_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._register_default_tools()

    @classmethod
    def from_config(
        cls,
        config: Config,
        bus: MessageBus,
        provider: LLMProvider,
        session_manager: SessionManager | None = None,
    ) -> "AgentLoop":
        """根据配置对象创建智能体循环。"""
        defaults = config.agents.defaults
        return cls(
            bus=bus,
            provider=provider,
            workspace=config.workspace_path,
            model=defaults.model,
            max_iterations=defaults.max_tool_iterations,
            max_tokens=defaults.max_tokens,
            temperature=defaults.temperature,
            context_budget=config.agents.context,
            brave_api_key=config.tools.web.search.api_key or None,
            search_max_results=config.tools.web.search.max_results,
            exec_config=config.tools.exec,
            restrict_to_workspace=config.tools.restrict_to_workspace,
            session_manager=session_manager,
            agent_id=defaults.agent_id,
            max_ping_pong_turns=defaults.max_ping_pong_turns,
            history_limit=defaults.history_limit,
            subagent_max_iterations=defaults.subagent_max_iterations,
        )

    def _register_default_tools(self) -> None:
        """注册默认工具集。"""
        # 文件工具（如果配置则限制到工作区）
        allowed_dir = self.workspace if self.restrict_to_workspace else None
        self.tools.register(ReadFileTool(workspace=self.workspace, allowed_dir=allowed_dir))
        self.tools.register(WriteFileTool(workspace=self.workspace, allowed_dir=allowed_dir))
        self.tools.register(EditFileTool(workspace=self.workspace, allowed_dir=allowed_dir))
        self.tools.register(ListDirTool(workspace=self.workspace, allowed_dir=allowed_dir))

        # Shell 工具
        self.tools.register(ExecTool(
            working_dir=str(self.workspace),
            timeout=self.exec_config.timeout,
            restrict_to_workspace=self.restrict_to_workspace,
        ))

        # Web 工具
        self.tools.register(WebSearchTool(api_key=self.brave_api_key, max_results=self.search_max_results))
        self.tools.register(WebFetchTool())

        # 消息与子智能体
        self.tools.register(MessageTool(send_callback=self.bus.publish_outbound))
        self.tools.register(SpawnTool(manager=self.subagents))
        self.tools.register(SubagentsTool(manager=self.subagents))

        # 跨会话
        self.tools.register(SessionsListTool(self.sessions))
        self.tools.register(SessionsHistoryTool(self.sessions))
        self.tools.register(SessionsSendTool(self.sessions, self.bus))

    async def run(self) -> None:
        """运行智能体循环，处理来自总线的消息。"""
        self._running = True
        logger.info("智能体循环已启动")

        while self._running:
            try:
                msg = await asyncio.wait_for(
                    self.bus.consume_inbound(),
                    timeout=1.0
                )
            except asyncio.TimeoutError:
                continue

            try:
                response = await self.handle_inbound(msg)
                if response:
                    await self.bus.publish_outbound(response)
            except Exception as e:
                logger.error(f"处理消息时出错：{e}")
                channel, chat_id = self._reply_target(msg)
                await self.bus.publish_outbound(OutboundMessage(
                    channel=channel,
                    chat_id=chat_id,
                    content=APOLOGY_TEMPLATE.format(error=e),
                ))

    def stop(self) -> None:
        """停止智能体循环。"""
        self._running = False
        logger.info("智能体循环正在停止")

    async def handle_inbound(
        self,
        msg: InboundMessage,
        session_key_override: str | None = None,
    ) -> OutboundMessage | None:
        """
        处理单条入站消息。

        参数:
            msg: 用户消息或系统事件（channel="system"，chat_id 为 "来源通道:来源聊天"）。
            session_key_override: 覆盖默认的会话键。

        返回:
            响应消息；静默回复或迭代耗尽时为 None。
        """
        route = self._resolve_route(msg, session_key_override)
        async with self._lock_for(route.session_key):
            return await self._run_turn(msg, route)

    async def process_direct(
        self,
        content: str,
        session_key: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        直接处理一条消息（用于 CLI）。

        返回:
            智能体的响应文本；不需要回复时为空字符串。
        """
        msg = InboundMessage(
            channel=channel,
            sender_id="user",
            chat_id=chat_id,
            content=content,
            metadata=metadata or {},
        )
        response = await self.handle_inbound(msg, session_key_override=session_key)
        return response.content if response else ""

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_key] = lock
        return lock

    def _reply_target(self, msg: InboundMessage) -> tuple[str, str]:
        if msg.is_system:
            return split_origin(msg.chat_id)
        return msg.channel, msg.chat_id

    def _resolve_route(self, msg: InboundMessage, session_key_override: str | None) -> TurnRoute:
        """系统事件路由回来源会话，其余消息按自身的通道与聊天路由。"""
        channel, chat_id = self._reply_target(msg)
        if msg.is_system:
            session_key = session_key_override or f"{channel}:{chat_id}"
            try:
                depth = int(msg.metadata.get("handoff_depth", 0))
            except (TypeError, ValueError):
                depth = 0
            return TurnRoute(channel, chat_id, session_key, max(0, depth))
        return TurnRoute(channel, chat_id, session_key_override or msg.session_key)

    def _resolve_model(self, session: Session, metadata: dict[str, Any]) -> str:
        """解析本轮模型：显式清除 > 显式覆盖（并记住）> 会话偏好 > 默认模型。"""
        if any(_truthy(metadata.get(key)) for key in MODEL_RESET_KEYS):
            if session.metadata.pop(PREFERRED_MODEL_KEY, None):
                logger.info(f"会话 {session.key} 的模型偏好已清除")
            return self.model

        for key in MODEL_OVERRIDE_KEYS:
            value = metadata.get(key)
            if isinstance(value, str) and value.strip():
                override = value.strip()
                if session.metadata.get(PREFERRED_MODEL_KEY) != override:
                    logger.info(f"会话 {session.key} 切换模型：{override}")
                session.metadata[PREFERRED_MODEL_KEY] = override
                return override

        stored = session.metadata.get(PREFERRED_MODEL_KEY)
        if isinstance(stored, str) and stored.strip():
            return stored
        return self.model

    def _build_turn_content(self, msg: InboundMessage, pending_events: list[str]) -> str:
        """把待处理的系统事件逐行放在本轮内容之前。"""
        content = f"[System: {msg.sender_id}] {msg.content}" if msg.is_system else msg.content
        if not pending_events:
            return content
        prefix = "\n".join(f"[System Message] {event}" for event in pending_events)
        return f"{prefix}\n\n{content}" if content else prefix

    def _build_hints(self, msg: InboundMessage, route: TurnRoute) -> list[str]:
        hints = []
        if msg.message_id:
            hints.append(f"当前消息 ID：{msg.message_id}（可用 [[reply_to_current]] 回复这条消息）。")
        if route.handoff_depth:
            hints.append(
                f"这一轮来自另一个会话的转交（深度 {route.handoff_depth}/{self.max_ping_pong_turns}）。"
            )
        return hints

    async def _run_turn(self, msg: InboundMessage, route: TurnRoute) -> OutboundMessage | None:
        if msg.is_system:
            logger.info(f"正在处理来自 {msg.sender_id} 的系统事件，目标会话 {route.session_key}")
        else:
            logger.info(f"正在处理来自 {msg.channel}:{msg.sender_id} 的消息：{preview(msg.content)}")

        session = self.sessions.get_or_create(route.session_key)
        model = self._resolve_model(session, msg.metadata)
        update_delivery_context(
            session,
            build_delivery_context(route.channel, route.chat_id, msg.metadata, reply_to=msg.message_id),
        )

        pending_events = drain_pending_system_events(session)
        if pending_events:
            logger.debug(f"会话 {session.key} 取出 {len(pending_events)} 条待处理系统事件")
        turn_content = self._build_turn_content(msg, pending_events)

        tool_context = ToolContext(
            session_key=route.session_key,
            channel=route.channel,
            chat_id=route.chat_id,
            handoff_depth=route.handoff_depth,
            agent_id=self.agent_id,
            max_ping_pong_turns=self.max_ping_pong_turns,
            message_id=msg.message_id,
            account_id=session.metadata.get("delivery_context", {}).get("account_id"),
        )
        self.tools.set_context(tool_context)

        messages = self.context.build_messages(
            history=session.get_history(self.history_limit),
            current_message=turn_content,
            media=msg.media if msg.media else None,
            channel=route.channel,
            chat_id=route.chat_id,
            session_key=route.session_key,
            hints=self._build_hints(msg, route),
        )
        session.add_message("user", turn_content)

        final_content = await self._iterate(messages, session, model, tool_context)
        if final_content is None:
            self.sessions.save(session)
            return None

        directives = parse_reply_directives(final_content, msg.message_id)
        decision = apply_silent_reply_policy(directives.content)
        if decision.drop:
            logger.info(f"会话 {session.key} 的回复被静默策略丢弃")
            if final_content.strip():
                session.add_message("assistant", final_content)
            self.sessions.save(session)
            return None

        logger.info(f"对 {route.channel}:{route.chat_id} 的响应：{preview(decision.content, 120)}")
        session.add_message("assistant", decision.content)
        if directives.reply_to:
            update_delivery_context(session, {"reply_to": directives.reply_to})
        self.sessions.save(session)

        return OutboundMessage(
            channel=route.channel,
            chat_id=route.chat_id,
            content=decision.content,
            reply_to=directives.reply_to,
            metadata=dict(msg.metadata),
        )

    async def _iterate(
        self,
        messages: list[dict[str, Any]],
        session: Session,
        model: str,
        tool_context: ToolContext,
    ) -> str | None:
        """
        运行模型与工具的往返，直到模型给出最终回复。

        返回:
            最终回复文本；模型选择静默或迭代次数耗尽时为 None。
        """
        budget = self.context_budget
        for iteration in range(1, self.max_iterations + 1):
            pruned = self.pruner.prune(
                messages,
                context_tokens=budget.context_tokens,
                reserve_tokens_floor=budget.reserve_tokens_floor,
                soft_threshold_tokens=budget.soft_threshold_tokens,
            )
            if pruned.changed:
                logger.info(
                    f"输入已裁剪：移除历史 {pruned.dropped_history_count} 条，"
                    f"截断工具结果 {pruned.truncated_tool_result_count} 条，"
                    f"估算 {pruned.estimated_tokens}/{pruned.budget_tokens} 令牌"
                )

            response = await self.provider.chat(
                messages=pruned.messages,
                tools=self.tools.get_definitions(),
                model=model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )

            if contains_silent_marker(response.content):
                logger.info(f"模型在第 {iteration} 轮选择静默")
                session.add_message("assistant", response.content or "")
                return None

            if not response.has_tool_calls:
                return response.content or ""

            tool_call_dicts = [tc.to_openai() for tc in response.tool_calls]
            messages = self.context.add_assistant_message(
                messages, response.content, tool_call_dicts, response.reasoning_content
            )
            extra: dict[str, Any] = {"tool_calls": tool_call_dicts}
            if response.reasoning_content:
                extra["reasoning_content"] = response.reasoning_content
            session.add_message("assistant", response.content or "", **extra)

            for tool_call in response.tool_calls:
                args_str = json.dumps(tool_call.arguments, ensure_ascii=False)
                logger.info(f"工具调用：{tool_call.name}({args_str[:200]})")
                result = await self.tools.execute(tool_call.name, tool_call.arguments, context=tool_context)
                messages = self.context.add_tool_result(
                    messages, tool_call.id, tool_call.name, result
                )
                session.add_message("tool", result, tool_call_id=tool_call.id, name=tool_call.name)

        logger.warning(f"会话 {session.key} 达到最大迭代次数 {self.max_iterations}，本轮不回复")
        return None
