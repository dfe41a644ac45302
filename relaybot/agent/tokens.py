"""静默回复标记与投递策略。"""

import re
from dataclasses import dataclass

SILENT_REPLY_TOKEN = "NO_REPLY"

# <noreply/> 不区分大小写；NO_REPLY 只按原样大写匹配
_SILENT_MARKER_PATTERN = re.compile(r"(?i:<\s*noreply\s*/\s*>)|(?<![A-Za-z0-9_])NO_REPLY(?![A-Za-z0-9_])")


def contains_silent_marker(text: str | None) -> bool:
    """文本中任意位置出现静默标记即返回 True。"""
    if not text:
        return False
    return _SILENT_MARKER_PATTERN.search(text) is not None


def strip_silent_marker(text: str) -> str:
    return _SILENT_MARKER_PATTERN.sub("", text).strip()


@dataclass
class SilentReplyDecision:
    drop: bool
    content: str


def apply_silent_reply_policy(content: str | None) -> SilentReplyDecision:
    """
    决定最终内容是否投递。
    
    去掉静默标记后为空（包括本来就为空）时丢弃；否则返回去掉标记的内容。
    """
    text = (content or "").strip()
    if contains_silent_marker(text):
        text = strip_silent_marker(text)
    if not text:
        return SilentReplyDecision(drop=True, content="")
    return SilentReplyDecision(drop=False, content=text)
