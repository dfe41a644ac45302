"""路径与字符串辅助函数。"""

import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir(path: Path) -> Path:
    """确保目录存在，返回该目录。"""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """将任意字符串转换为安全的文件名。"""
    return _UNSAFE_CHARS.sub("_", name).strip()


def preview(text: str | None, limit: int = 80) -> str:
    """用于日志的截断预览。"""
    text = text or ""
    return text[:limit] + "..." if len(text) > limit else text
