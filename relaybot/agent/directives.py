"""从生成文本中解析回复目标指令。"""

import re
from dataclasses import dataclass

# 标签内允许空白，例如 [[ reply_to_current ]] / [[ reply_to: 123 ]]
_REPLY_CURRENT_PATTERN = re.compile(r"\[\[\s*reply_to_current\s*\]\]", re.IGNORECASE)
_REPLY_EXPLICIT_PATTERN = re.compile(r"\[\[\s*reply_to\s*:\s*([^\]\s][^\]]*?)\s*\]\]", re.IGNORECASE)
_INLINE_SPACES = re.compile(r"[ \t]{2,}")


@dataclass
class ReplyDirectives:
    content: str
    reply_to: str | None = None
    has_reply_tag: bool = False


def parse_reply_directives(text: str | None, current_message_id: str | None = None) -> ReplyDirectives:
    """
    解析 [[reply_to_current]] 与 [[reply_to:<id>]] 并从可见文本中去除。
    
    两者同时出现时显式 ID 优先；[[reply_to_current]] 仅在当前消息 ID 已知时生效。
    """
    if not text:
        return ReplyDirectives(content="")
    
    explicit_ids = [m.group(1).strip() for m in _REPLY_EXPLICIT_PATTERN.finditer(text)]
    has_current = _REPLY_CURRENT_PATTERN.search(text) is not None
    if not explicit_ids and not has_current:
        return ReplyDirectives(content=text)
    
    cleaned = _REPLY_EXPLICIT_PATTERN.sub("", text)
    cleaned = _REPLY_CURRENT_PATTERN.sub("", cleaned)
    cleaned = "\n".join(_INLINE_SPACES.sub(" ", line).rstrip() for line in cleaned.split("\n")).strip()
    
    reply_to = None
    if explicit_ids:
        reply_to = explicit_ids[0]
    elif current_message_id:
        reply_to = current_message_id
    return ReplyDirectives(content=cleaned, reply_to=reply_to, has_reply_tag=True)
