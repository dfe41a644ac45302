"""跨会话工具：列出会话、读取历史、向其他会话发送消息。"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any

from relaybot.agent.tools.base import Tool, ToolContext
from relaybot.bus.events import OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.session.manager import SessionManager

DEFAULT_LIMIT = 20
MAX_MESSAGE_LIMIT = 20
HISTORY_TEXT_MAX_CHARS = 4000
HISTORY_MAX_BYTES = 80 * 1024


def parse_session_key(key: str) -> tuple[str, str] | None:
    """把 "channel:chat_id" 拆开；格式不对时返回 None。"""
    channel, sep, chat_id = key.strip().partition(":")
    if not sep or not channel or not chat_id:
        return None
    return channel, chat_id


def classify_session_kind(key: str) -> str:
    if key.startswith("cron:") or key == "heartbeat":
        return "cron"
    if key.startswith("hook:"):
        return "hook"
    if key.startswith(("subagent:", "node:")):
        return "node"
    if key.startswith("system:"):
        return "other"
    return "main"


def _session_label(metadata: dict[str, Any]) -> str | None:
    label = metadata.get("label") or metadata.get("session_label")
    return label.strip() if isinstance(label, str) else None


def _find_session_key(sessions: SessionManager, name: str) -> str | None:
    """按精确键、键的 chat 后缀或元数据标签查找会话键。"""
    for entry in sessions.list_sessions():
        key = entry["key"]
        if key == name or key.endswith(f":{name}") or _session_label(entry["metadata"]) == name:
            return key
    return None


def _sanitize(msg: dict[str, Any]) -> dict[str, Any]:
    content = msg.get("content") or ""
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False)
    if len(content) > HISTORY_TEXT_MAX_CHARS:
        content = content[:HISTORY_TEXT_MAX_CHARS] + "\n…(truncated)…"
    return {"role": msg.get("role"), "content": content, "timestamp": msg.get("timestamp")}


def _enforce_hard_cap(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """整体超过 80 KiB 时只保留最后一条，仍然过大则用占位说明代替。"""
    def size(value: Any) -> int:
        return len(json.dumps(value, ensure_ascii=False).encode("utf-8"))
    
    if size(items) <= HISTORY_MAX_BYTES:
        return items
    if items and size(items[-1:]) <= HISTORY_MAX_BYTES:
        return items[-1:]
    return [{"role": "assistant", "content": "[sessions_history omitted: message too large]"}]


class SessionsListTool(Tool):
    """列出会话及其时间戳、投递上下文。"""
    
    def __init__(self, sessions: SessionManager):
        self._sessions = sessions
    
    @property
    def name(self) -> str:
        return "sessions_list"
    
    @property
    def description(self) -> str:
        return "列出可用的会话及其时间戳。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "kinds": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "按会话类型过滤（main/cron/hook/node/other）",
                },
                "limit": {"type": "integer", "minimum": 1, "description": "返回的最大会话数"},
                "active_minutes": {"type": "integer", "minimum": 1, "description": "只包含最近 N 分钟内活跃的会话"},
                "message_limit": {"type": "integer", "minimum": 0, "description": "附带最近 N 条消息（最多 20）"},
            },
        }
    
    async def execute(
        self,
        kinds: list[str] | None = None,
        limit: int = DEFAULT_LIMIT,
        active_minutes: int | None = None,
        message_limit: int = 0,
        **kwargs: Any,
    ) -> str:
        wanted = {k.lower() for k in kinds} if kinds else None
        message_limit = min(message_limit, MAX_MESSAGE_LIMIT)
        cutoff = datetime.now() - timedelta(minutes=active_minutes) if active_minutes else None
        
        entries = sorted(self._sessions.list_sessions(), key=lambda e: e.get("updated_at") or "", reverse=True)
        results = []
        for entry in entries:
            key = entry["key"]
            kind = classify_session_kind(key)
            if wanted and kind not in wanted:
                continue
            if cutoff and entry.get("updated_at") and datetime.fromisoformat(entry["updated_at"]) < cutoff:
                continue
            
            metadata = entry["metadata"]
            parsed = parse_session_key(key)
            item: dict[str, Any] = {
                "key": key,
                "kind": kind,
                "channel": parsed[0] if parsed else None,
                "label": _session_label(metadata),
                "delivery_context": metadata.get("delivery_context"),
                "updated_at": entry.get("updated_at"),
                "created_at": entry.get("created_at"),
                "last_channel": metadata.get("last_channel") or (parsed[0] if parsed else None),
                "last_to": metadata.get("last_to") or (parsed[1] if parsed else None),
                "last_account_id": metadata.get("last_account_id"),
                "transcript_path": entry.get("path"),
            }
            if message_limit > 0:
                session = self._sessions.get_if_exists(key)
                if session:
                    visible = [m for m in session.messages if m.get("role") != "tool"]
                    item["messages"] = [_sanitize(m) for m in visible[-message_limit:]]
            results.append(item)
            if len(results) >= limit:
                break
        
        return json.dumps({"sessions": results}, ensure_ascii=False, indent=2)


class SessionsHistoryTool(Tool):
    """读取某个会话最近的消息。"""
    
    def __init__(self, sessions: SessionManager):
        self._sessions = sessions
    
    @property
    def name(self) -> str:
        return "sessions_history"
    
    @property
    def description(self) -> str:
        return "获取某个会话的最近消息。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session_key": {"type": "string", "description": "会话键，格式为 channel:chat_id，或会话标签"},
                "limit": {"type": "integer", "minimum": 1, "description": "返回的最大消息数"},
                "include_tools": {"type": "boolean", "description": "是否包含工具消息"},
            },
            "required": ["session_key"],
        }
    
    async def execute(
        self,
        session_key: str,
        limit: int = DEFAULT_LIMIT,
        include_tools: bool = False,
        **kwargs: Any,
    ) -> str:
        session_key = session_key.strip()
        if not session_key:
            return "错误：需要 session_key"
        session = self._sessions.get_if_exists(session_key)
        if not session:
            resolved = _find_session_key(self._sessions, session_key)
            session = self._sessions.get_if_exists(resolved) if resolved else None
        if not session:
            return f"错误：未找到会话 '{session_key}'"
        
        messages = session.messages if include_tools else [m for m in session.messages if m.get("role") != "tool"]
        recent = _enforce_hard_cap([_sanitize(m) for m in messages[-limit:]])
        return json.dumps({"session_key": session.key, "messages": recent}, ensure_ascii=False, indent=2)


class SessionsSendTool(Tool):
    """
    向另一个会话发送消息。
    
    默认直接投递到目标通道并记入目标会话历史；wake=true 时改为向目标会话发布
    一条系统事件，由目标会话的智能体处理（交接深度 +1，达到上限后拒绝）。
    """
    
    needs_context = True
    
    def __init__(self, sessions: SessionManager, bus: MessageBus):
        self._sessions = sessions
        self._bus = bus
    
    @property
    def name(self) -> str:
        return "sessions_send"
    
    @property
    def description(self) -> str:
        return "向另一个会话发送消息（跨通道投递）。wake=true 时让目标会话的智能体处理该消息。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session_key": {"type": "string", "description": "目标会话键，格式为 channel:chat_id"},
                "label": {"type": "string", "description": "会话标签（未提供 session_key 时使用）"},
                "message": {"type": "string", "description": "要发送的消息内容"},
                "content": {"type": "string", "description": "message 的别名"},
                "reply_to": {"type": "string", "description": "要回复的消息 ID"},
                "silent": {"type": "boolean", "description": "在支持的通道上静默发送"},
                "wake": {"type": "boolean", "description": "让目标会话的智能体处理此消息而不是直接投递"},
            },
            "required": [],
        }
    
    async def execute(
        self,
        context: ToolContext,
        session_key: str | None = None,
        label: str | None = None,
        message: str | None = None,
        content: str | None = None,
        reply_to: str | None = None,
        silent: bool | None = None,
        wake: bool = False,
        **kwargs: Any,
    ) -> str:
        run_id = uuid.uuid4().hex
        
        def reply(status: str, **fields: Any) -> str:
            return json.dumps({"run_id": run_id, "status": status, **fields}, ensure_ascii=False, indent=2)
        
        session_key = (session_key or "").strip()
        label = (label or "").strip()
        text = message or content or ""
        if session_key and label:
            return reply("error", error="session_key 和 label 只能提供一个")
        if not text:
            return reply("error", error="需要 message")
        if not session_key:
            if not label:
                return reply("error", error="需要 session_key 或 label")
            session_key = _find_session_key(self._sessions, label) or ""
            if not session_key:
                return reply("error", error=f"没有找到标签为 '{label}' 的会话")
        
        parsed = parse_session_key(session_key)
        if not parsed:
            return reply("error", error="session_key 的格式必须是 channel:chat_id")
        channel, chat_id = parsed
        
        if wake:
            if context.handoff_depth >= context.max_ping_pong_turns:
                return reply(
                    "error",
                    error=f"已达到最大交接深度 {context.max_ping_pong_turns}，停止来回传递",
                )
            await self._bus.publish_system_event(
                sender_id=f"session:{context.session_key}",
                origin_channel=channel,
                origin_chat_id=chat_id,
                content=f"来自会话 {context.session_key} 的消息：\n{text}",
                metadata={
                    "handoff_depth": context.handoff_depth + 1,
                    "source_session_key": context.session_key,
                    "source_agent_id": context.agent_id,
                    **({"reply_to": reply_to, "message_id": reply_to} if reply_to else {}),
                },
            )
            return reply("accepted", session_key=session_key, handoff_depth=context.handoff_depth + 1)
        
        metadata: dict[str, Any] = {"source_session_key": context.session_key, "source_agent_id": context.agent_id}
        if silent is not None:
            metadata["silent"] = silent
        await self._bus.publish_outbound(OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=text,
            reply_to=reply_to,
            metadata=metadata,
        ))
        
        session = self._sessions.get_or_create(session_key)
        session.add_message("assistant", text, via="sessions_send", source_session_key=context.session_key)
        self._sessions.save(session)
        return reply("ok", session_key=session_key)
