"""用于组装智能体提示词的上下文构建器。"""

import base64
import mimetypes
import platform
from datetime import datetime
from pathlib import Path
from typing import Any

from relaybot.agent.tokens import SILENT_REPLY_TOKEN


class ContextBuilder:
    """
    为智能体构建上下文（系统提示词 + 消息）。
    
    把引导文件、长期记忆、会话路由信息和对话历史组合成 LLM 消息列表。
    """
    
    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md"]
    MAX_BOOTSTRAP_CHARS = 4000
    MAX_MEMORY_CHARS = 8000
    
    def __init__(self, workspace: Path):
        self.workspace = workspace
    
    def build_system_prompt(self, hints: list[str] | None = None) -> str:
        """
        从身份说明、引导文件和记忆构建系统提示词。
        
        参数:
            hints: 追加到提示词末尾的本轮提示（例如回复目标）。
        """
        parts = [self._get_identity()]
        
        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(f"# 工作区上下文\n\n{bootstrap}")
        
        memory = self._load_memory()
        if memory:
            parts.append(f"# Memory\n\n{memory}")
        
        if hints:
            parts.append("# 本轮提示\n\n" + "\n".join(f"- {h}" for h in hints))
        
        return "\n\n---\n\n".join(parts)
    
    def _get_identity(self) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"
        
        return f"""# relaybot 🛰️

你是 relaybot，一个运行在聊天网关中的个人助理。你可以使用工具来：
- 读取、写入和编辑文件（read_file、write_file、edit_file、list_dir）
- 执行 shell 命令（exec）
- 搜索网络和获取网页（web_search、web_fetch）
- 向聊天通道发送消息（message）和跨会话发送（sessions_list、sessions_history、sessions_send）
- 为复杂的后台任务生成子智能体（spawn），并管理它们（subagents：list/steer/kill）

## 消息
- 普通回复会自动发送到当前会话，不要为此调用 message 工具。
- 如果你已经用 message 工具发送了对用户可见的回复，请只回复：{SILENT_REPLY_TOKEN}
- 如果 [System Message] 报告了已完成的后台工作并需要告知用户，请用你自己的语气改写后发送。

## 回复标签
- [[reply_to_current]] 回复触发本轮的消息。
- [[reply_to:<id>]] 回复指定 ID 的消息。
- 标签会在发送前被去掉。

## 静默回复
当你无话可说时，只回复：{SILENT_REPLY_TOKEN}
不要把它附加在真实回复后面。

## 当前时间
{now}

## 运行时
{runtime}

## 工作区
你的工作区位于：{workspace_path}
- 记忆文件：{workspace_path}/memory/MEMORY.md

始终乐于助人、准确和简洁。需要记住某些事情时，写入 {workspace_path}/memory/MEMORY.md"""
    
    def _load_bootstrap_files(self) -> str:
        parts = []
        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.is_file():
                content = file_path.read_text(encoding="utf-8")[: self.MAX_BOOTSTRAP_CHARS]
                parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)
    
    def _load_memory(self) -> str:
        memory_file = self.workspace / "memory" / "MEMORY.md"
        if not memory_file.is_file():
            return ""
        return memory_file.read_text(encoding="utf-8")[: self.MAX_MEMORY_CHARS].strip()
    
    def build_messages(
        self,
        history: list[dict[str, Any]],
        current_message: str,
        media: list[str] | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
        session_key: str | None = None,
        hints: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        构建 LLM 调用的完整消息列表：系统提示词、历史、当前用户消息。

        参数:
            history: 之前的对话消息（LLM 格式）。
            current_message: 新的用户消息。
            media: 可选的图片本地文件路径列表。
            channel: 当前通道。
            chat_id: 当前聊天 ID。
            session_key: 当前会话键。
            hints: 本轮提示。
        """
        system_prompt = self.build_system_prompt(hints)
        if channel and chat_id:
            system_prompt += f"\n\n## 当前会话\n通道：{channel}\n聊天 ID：{chat_id}"
        if session_key:
            system_prompt += f"\n会话：{session_key}"
        
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": self._build_user_content(current_message, media)})
        return messages

    def _build_user_content(self, text: str, media: list[str] | None) -> str | list[dict[str, Any]]:
        """构建带有可选 base64 编码图片的用户消息内容。"""
        images = []
        for path in media or []:
            p = Path(path)
            mime, _ = mimetypes.guess_type(path)
            if not p.is_file() or not mime or not mime.startswith("image/"):
                continue
            b64 = base64.b64encode(p.read_bytes()).decode()
            images.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}})
        
        if not images:
            return text
        return images + [{"type": "text", "text": text}]
    
    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """将工具结果追加到消息列表。"""
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages
    
    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
        reasoning_content: str | None = None,
    ) -> list[dict[str, Any]]:
        """将助手消息（可带工具调用与推理内容）追加到消息列表。"""
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        if reasoning_content:
            msg["reasoning_content"] = reasoning_content
        messages.append(msg)
        return messages
