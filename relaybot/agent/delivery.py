"""投递上下文：缓存在会话上的路由快照，供进程外的通知者重新发送消息。"""

from typing import Any

from relaybot.bus.events import InboundMessage, SYSTEM_CHANNEL
from relaybot.session.manager import Session

DELIVERY_CONTEXT_KEY = "delivery_context"

# 只保留已识别的协议子对象中的这些字段
PROTOCOL_METADATA_FIELDS: dict[str, tuple[str, ...]] = {
    "slack": ("thread_ts", "channel_type"),
    "telegram": ("message_thread_id", "is_forum"),
    "discord": ("guild_id", "thread_id"),
    "feishu": ("chat_type", "root_id"),
}


def _first_str(metadata: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def build_delivery_context(
    channel: str,
    chat_id: str,
    metadata: dict[str, Any] | None = None,
    reply_to: str | None = None,
) -> dict[str, Any]:
    """从本轮的路由与入站元数据推导投递上下文快照。"""
    metadata = metadata or {}
    context: dict[str, Any] = {"channel": channel, "chat_id": chat_id}
    
    reply_to = reply_to or _first_str(metadata, "reply_to", "message_id", "messageId")
    if reply_to:
        context["reply_to"] = reply_to
    account_id = _first_str(metadata, "account_id", "accountId")
    if account_id:
        context["account_id"] = account_id
    
    protocol: dict[str, Any] = {}
    for name, fields in PROTOCOL_METADATA_FIELDS.items():
        sub = metadata.get(name)
        if not isinstance(sub, dict):
            continue
        picked = {f: sub[f] for f in fields if sub.get(f) is not None}
        if picked:
            protocol[name] = picked
    if protocol:
        context["metadata"] = protocol
    return context


def update_delivery_context(session: Session, context: dict[str, Any]) -> dict[str, Any]:
    """把新快照合并进会话元数据（新值覆盖旧值，缺失的字段保留）。"""
    previous = session.metadata.get(DELIVERY_CONTEXT_KEY)
    merged = dict(previous) if isinstance(previous, dict) else {}
    merged.update({k: v for k, v in context.items() if v is not None})
    session.metadata[DELIVERY_CONTEXT_KEY] = merged
    
    session.metadata["last_channel"] = merged.get("channel")
    session.metadata["last_to"] = merged.get("chat_id")
    if merged.get("account_id"):
        session.metadata["last_account_id"] = merged["account_id"]
    return merged


def build_wake_event(session: Session, summary: str, sender_id: str = "restart-notifier") -> InboundMessage | None:
    """
    根据会话缓存的投递上下文构建一条系统事件，用于进程外的唤醒通知（例如重启后报平安）。
    
    无法解析路由时返回 None。
    """
    context = session.metadata.get(DELIVERY_CONTEXT_KEY)
    context = context if isinstance(context, dict) else {}
    key_channel, _, key_chat = session.key.partition(":")
    channel = context.get("channel") or session.metadata.get("last_channel") or (key_channel if key_chat else None)
    chat_id = context.get("chat_id") or session.metadata.get("last_to") or (key_chat or None)
    if not channel or not chat_id:
        return None
    
    lines = [
        f"System event: {summary}",
        "Please send one short confirmation to the user.",
        "Do not call any tools.",
        "Use the same language as the user's recent conversation.",
    ]
    metadata: dict[str, Any] = {"source": sender_id}
    reply_to = context.get("reply_to")
    if reply_to:
        lines.append(f"Reply target message id: {reply_to}. If suitable, include [[reply_to:{reply_to}]].")
        metadata["reply_to"] = reply_to
        metadata["message_id"] = reply_to
    if context.get("account_id"):
        metadata["account_id"] = context["account_id"]
    for name, sub in (context.get("metadata") or {}).items():
        metadata[name] = dict(sub)
    
    return InboundMessage(
        channel=SYSTEM_CHANNEL,
        sender_id=sender_id,
        chat_id=f"{channel}:{chat_id}",
        content="\n".join(lines),
        metadata=metadata,
    )
