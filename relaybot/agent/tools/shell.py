"""Shell 命令执行工具。"""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

from relaybot.agent.tools.base import Tool

DEFAULT_DENY_PATTERNS = [
    r"\brm\s+-[rf]{1,2}\b",          # rm -r, rm -rf, rm -fr
    r"\bdel\s+/[fq]\b",              # del /f, del /q
    r"\brmdir\s+/s\b",               # rmdir /s
    r"\b(format|mkfs|diskpart)\b",   # 磁盘操作
    r"\bdd\s+if=",
    r"\b(shutdown|reboot|poweroff)\b",
    r":\(\)\s*\{.*\};\s*:",          # fork 炸弹
]

MAX_OUTPUT_CHARS = 10_000


class ExecTool(Tool):
    """执行 shell 命令并返回 stdout/stderr。"""
    
    def __init__(
        self,
        timeout: int = 60,
        working_dir: str | None = None,
        deny_patterns: list[str] | None = None,
        allow_patterns: list[str] | None = None,
        restrict_to_workspace: bool = False,
    ):
        self.timeout = timeout
        self.working_dir = working_dir
        self.deny_patterns = [re.compile(p) for p in (deny_patterns or DEFAULT_DENY_PATTERNS)]
        self.allow_patterns = [re.compile(p) for p in (allow_patterns or [])]
        self.restrict_to_workspace = restrict_to_workspace
    
    @property
    def name(self) -> str:
        return "exec"
    
    @property
    def description(self) -> str:
        return "执行 shell 命令并返回其输出。请谨慎使用。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "要执行的 shell 命令"},
                "working_dir": {"type": "string", "description": "命令的可选工作目录"},
            },
            "required": ["command"],
        }
    
    async def execute(self, command: str, working_dir: str | None = None, **kwargs: Any) -> str:
        cwd = working_dir or self.working_dir or os.getcwd()
        guard_error = self._guard_command(command, cwd)
        if guard_error:
            return guard_error
        
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"错误：命令在 {self.timeout} 秒后超时"
        
        parts = []
        if stdout:
            parts.append(stdout.decode("utf-8", errors="replace"))
        stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        if stderr_text.strip():
            parts.append(f"STDERR:\n{stderr_text}")
        if process.returncode != 0:
            parts.append(f"\nExit code: {process.returncode}")
        
        result = "\n".join(parts) if parts else "(无输出)"
        if len(result) > MAX_OUTPUT_CHARS:
            result = result[:MAX_OUTPUT_CHARS] + f"\n... (已截断，还有 {len(result) - MAX_OUTPUT_CHARS} 个字符)"
        return result

    def _guard_command(self, command: str, cwd: str) -> str | None:
        """针对潜在破坏性命令的尽力而为防护。"""
        lower = command.strip().lower()

        if any(p.search(lower) for p in self.deny_patterns):
            return "错误：命令被安全防护阻止（检测到危险模式）"
        if self.allow_patterns and not any(p.search(lower) for p in self.allow_patterns):
            return "错误：命令被安全防护阻止（不在允许列表中）"

        if self.restrict_to_workspace:
            if "../" in command or "..\\" in command:
                return "错误：命令被安全防护阻止（检测到路径遍历）"
            root = Path(self.working_dir or cwd).resolve()
            if Path(cwd).resolve() != root and root not in Path(cwd).resolve().parents:
                return "错误：命令被安全防护阻止（工作目录在工作区之外）"
            for raw in re.findall(r"(?<![\w.])/[^\s\"';|&]+", command):
                p = Path(raw).resolve()
                if p != root and root not in p.parents:
                    return "错误：命令被安全防护阻止（路径在工作区之外）"

        return None
