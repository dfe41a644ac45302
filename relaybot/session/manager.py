"""对话会话的管理与 JSONL 持久化。"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.utils.helpers import ensure_dir, safe_filename

PENDING_SYSTEM_EVENTS_KEY = "pending_system_events"
MAX_PENDING_SYSTEM_EVENTS = 20


@dataclass
class Session:
    """
    一个对话会话。
    
    消息以追加方式记录；metadata 保存首选模型、待处理系统事件、投递上下文等。
    """
    
    key: str  # channel:chat_id，或 cron/system 流程的合成键
    messages: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)
    
    def add_message(self, role: str, content: str, **extra: Any) -> dict[str, Any]:
        """追加一条消息到会话。"""
        msg = {
            "role": role,
            "content": content,
            "timestamp": datetime.now().isoformat(),
            **extra,
        }
        self.messages.append(msg)
        self.updated_at = datetime.now()
        return msg
    
    def get_history(self, max_messages: int = 50) -> list[dict[str, Any]]:
        """
        以 LLM 格式返回最近的消息。
        
        保留 tool_calls / tool_call_id / name / reasoning_content，去掉时间戳等簿记字段。
        截断窗口不会从一串工具结果的中间开始。
        """
        recent = self.messages[-max_messages:] if max_messages > 0 else []
        while recent and recent[0].get("role") == "tool":
            recent = recent[1:]
        history = []
        for msg in recent:
            entry = {"role": msg["role"], "content": msg.get("content", "")}
            for key in ("tool_calls", "tool_call_id", "name", "reasoning_content"):
                if key in msg:
                    entry[key] = msg[key]
            history.append(entry)
        return history
    
    def clear(self) -> None:
        """清空会话中的所有消息。"""
        self.messages = []
        self.updated_at = datetime.now()


class SessionManager:
    """
    管理会话：内存缓存 + 每个键一个 JSONL 文件。
    
    文件第一行是元数据记录，其余每行一条消息。
    """
    
    def __init__(self, workspace: Path):
        self.workspace = workspace
        self.sessions_dir = ensure_dir(Path(workspace) / "sessions")
        self._cache: dict[str, Session] = {}
    
    def _get_session_path(self, key: str) -> Path:
        safe_key = safe_filename(key.replace(":", "_"))
        return self.sessions_dir / f"{safe_key}.jsonl"
    
    def get_or_create(self, key: str) -> Session:
        """获取现有会话或创建新会话。每个键只对应一个会话对象。"""
        if key in self._cache:
            return self._cache[key]
        session = self._load(key) or Session(key=key)
        self._cache[key] = session
        return session
    
    def get_if_exists(self, key: str) -> Session | None:
        """获取会话（如果在缓存或磁盘中存在）。"""
        if key in self._cache:
            return self._cache[key]
        session = self._load(key)
        if session:
            self._cache[key] = session
        return session
    
    def add_message(self, session: Session, role: str, content: str, **extra: Any) -> dict[str, Any]:
        return session.add_message(role, content, **extra)
    
    def clear(self, session: Session) -> None:
        session.clear()
    
    def _load(self, key: str) -> Session | None:
        path = self._get_session_path(key)
        if not path.exists():
            return None
        
        try:
            messages = []
            metadata: dict[str, Any] = {}
            created_at = updated_at = None
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("_type") == "metadata":
                        metadata = data.get("metadata") or {}
                        if data.get("created_at"):
                            created_at = datetime.fromisoformat(data["created_at"])
                        if data.get("updated_at"):
                            updated_at = datetime.fromisoformat(data["updated_at"])
                    else:
                        messages.append(data)
            return Session(
                key=key,
                messages=messages,
                created_at=created_at or datetime.now(),
                updated_at=updated_at or datetime.now(),
                metadata=metadata,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"加载会话 {key} 失败：{e}")
            return None
    
    def save(self, session: Session) -> None:
        """将会话写入磁盘并更新缓存。"""
        path = self._get_session_path(session.key)
        metadata_line = {
            "_type": "metadata",
            "key": session.key,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "metadata": session.metadata,
        }
        with open(path, "w", encoding="utf-8") as f:
            f.write(json.dumps(metadata_line, ensure_ascii=False) + "\n")
            for msg in session.messages:
                f.write(json.dumps(msg, ensure_ascii=False) + "\n")
        self._cache[session.key] = session
    
    def delete(self, key: str) -> bool:
        """删除会话。如果磁盘上存在文件则返回 True。"""
        self._cache.pop(key, None)
        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False
    
    def list_sessions(self) -> list[dict[str, Any]]:
        """列出磁盘上的所有会话（只读取元数据行）。"""
        sessions = []
        for path in sorted(self.sessions_dir.glob("*.jsonl")):
            try:
                with open(path, encoding="utf-8") as f:
                    first_line = f.readline().strip()
                if not first_line:
                    continue
                data = json.loads(first_line)
            except (OSError, ValueError):
                continue
            if data.get("_type") != "metadata":
                continue
            sessions.append({
                "key": data.get("key") or path.stem.replace("_", ":", 1),
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at"),
                "path": str(path),
                "metadata": data.get("metadata") or {},
            })
        return sessions


def enqueue_pending_system_event(sessions: SessionManager, session_key: str, message: str) -> bool:
    """
    向会话的带外通知收件箱追加一条系统事件，下一轮对话时由智能体循环取出。
    
    跳过空文本和与队尾相同的重复事件；队列最多保留最近 20 条。
    返回是否实际入队。
    """
    text = message.strip()
    if not text:
        return False
    session = sessions.get_or_create(session_key)
    queue = [
        item.strip()
        for item in session.metadata.get(PENDING_SYSTEM_EVENTS_KEY) or []
        if isinstance(item, str) and item.strip()
    ]
    if queue and queue[-1] == text:
        return False
    queue.append(text)
    session.metadata[PENDING_SYSTEM_EVENTS_KEY] = queue[-MAX_PENDING_SYSTEM_EVENTS:]
    session.updated_at = datetime.now()
    sessions.save(session)
    return True


def drain_pending_system_events(session: Session) -> list[str]:
    """取出并清空会话上排队的系统事件。"""
    raw = session.metadata.pop(PENDING_SYSTEM_EVENTS_KEY, None)
    if not isinstance(raw, list):
        return []
    return [item.strip() for item in raw if isinstance(item, str) and item.strip()]
