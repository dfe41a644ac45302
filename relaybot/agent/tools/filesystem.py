"""文件系统工具：读取、写入、编辑、列目录。"""

from pathlib import Path
from typing import Any

from relaybot.agent.tools.base import Tool

MAX_READ_CHARS = 200_000


class _WorkspaceFileTool(Tool):
    """文件工具的公共部分：相对路径相对于工作区解析，可选地限制在允许目录内。"""
    
    def __init__(self, workspace: Path | None = None, allowed_dir: Path | None = None):
        self._workspace = workspace
        self._allowed_dir = allowed_dir
    
    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute() and self._workspace:
            p = self._workspace / p
        resolved = p.resolve()
        if self._allowed_dir:
            root = self._allowed_dir.expanduser().resolve()
            if resolved != root and root not in resolved.parents:
                raise PermissionError(f"路径 {path} 在允许目录 {root} 之外")
        return resolved
    
    def _path_schema(self, description: str, **extra: dict[str, Any]) -> dict[str, Any]:
        properties = {"path": {"type": "string", "description": description}, **extra}
        return {"type": "object", "properties": properties, "required": list(properties)}


class ReadFileTool(_WorkspaceFileTool):
    """读取文件内容。"""
    
    @property
    def name(self) -> str:
        return "read_file"
    
    @property
    def description(self) -> str:
        return "读取指定路径的文件内容。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return self._path_schema("要读取的文件路径")
    
    async def execute(self, path: str, **kwargs: Any) -> str:
        try:
            file_path = self._resolve(path)
            if not file_path.is_file():
                return f"错误：文件未找到 {path}"
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except PermissionError as e:
            return f"错误：权限被拒绝 {e}"
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS] + f"\n... (已截断，共 {len(content)} 个字符)"
        return content


class WriteFileTool(_WorkspaceFileTool):
    """向文件写入内容，必要时创建父目录。"""

    @property
    def name(self) -> str:
        return "write_file"
    
    @property
    def description(self) -> str:
        return "向给定路径的文件写入内容。如果需要，会创建父目录。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return self._path_schema(
            "要写入的文件路径",
            content={"type": "string", "description": "要写入的内容"},
        )
    
    async def execute(self, path: str, content: str, **kwargs: Any) -> str:
        try:
            file_path = self._resolve(path)
        except PermissionError as e:
            return f"错误：{e}"
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return f"成功写入 {len(content)} 个字符到 {path}"


class EditFileTool(_WorkspaceFileTool):
    """把文件中唯一出现的 old_text 替换为 new_text。"""

    @property
    def name(self) -> str:
        return "edit_file"
    
    @property
    def description(self) -> str:
        return "通过用 new_text 替换 old_text 来编辑文件。old_text 必须在文件中完全且唯一地匹配。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return self._path_schema(
            "要编辑的文件路径",
            old_text={"type": "string", "description": "要查找并替换的精确文本"},
            new_text={"type": "string", "description": "要替换为的文本"},
        )
    
    async def execute(self, path: str, old_text: str, new_text: str, **kwargs: Any) -> str:
        try:
            file_path = self._resolve(path)
        except PermissionError as e:
            return f"错误：{e}"
        if not file_path.is_file():
            return f"错误：文件未找到：{path}"
        
        content = file_path.read_text(encoding="utf-8")
        count = content.count(old_text)
        if count == 0:
            return "错误：在文件中未找到 old_text。请确保它完全匹配。"
        if count > 1:
            return f"警告：old_text 出现了 {count} 次。请提供更多上下文使其唯一。"
        
        file_path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        return f"成功编辑 {path}"


class ListDirTool(_WorkspaceFileTool):
    """列出目录内容。"""

    @property
    def name(self) -> str:
        return "list_dir"
    
    @property
    def description(self) -> str:
        return "列出目录的内容。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return self._path_schema("要列出的目录路径")
    
    async def execute(self, path: str, **kwargs: Any) -> str:
        try:
            dir_path = self._resolve(path)
        except PermissionError as e:
            return f"错误：{e}"
        if not dir_path.is_dir():
            return f"错误：目录未找到：{path}"
        
        items = [
            f"{'📁' if item.is_dir() else '📄'} {item.name}"
            for item in sorted(dir_path.iterdir())
        ]
        return "\n".join(items) if items else f"目录 {path} 为空"
