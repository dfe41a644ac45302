"""relaybot 的实用工具函数。"""

from relaybot.utils.helpers import ensure_dir, preview, safe_filename

__all__ = ["ensure_dir", "preview", "safe_filename"]
