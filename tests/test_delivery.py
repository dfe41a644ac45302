from relaybot.agent.delivery import (
    DELIVERY_CONTEXT_KEY,
    build_delivery_context,
    build_wake_event,
    update_delivery_context,
)
from relaybot.session.manager import Session


# 测试新快照合并到旧快照的情况
def test_update_merges_with_previous() -> None:
    session = Session(key="telegram:42")
    update_delivery_context(session, build_delivery_context("telegram", "42", {"account_id": "bot-1"}))
    update_delivery_context(session, build_delivery_context("telegram", "42", {"message_id": "m5"}))

    ctx = session.metadata[DELIVERY_CONTEXT_KEY]
    assert ctx == {"channel": "telegram", "chat_id": "42", "account_id": "bot-1", "reply_to": "m5"}
    assert session.metadata["last_account_id"] == "bot-1"


# 测试只保留已识别的协议字段的情况
def test_protocol_fields_filtered() -> None:
    ctx = build_delivery_context("feishu", "oc_1", {"feishu": {"chat_type": "group", "secret": "x"}, "unknown": {"a": 1}})
    assert ctx["metadata"] == {"feishu": {"chat_type": "group"}}


# 测试按缓存的投递上下文构建唤醒事件的情况
def test_build_wake_event() -> None:
    session = Session(key="slack:C1")
    update_delivery_context(session, build_delivery_context(
        "slack", "C1", {"message_id": "171.5", "slack": {"thread_ts": "171.0"}}
    ))

    event = build_wake_event(session, "网关已重启")
    assert event.is_system
    assert event.chat_id == "slack:C1"
    assert "网关已重启" in event.content
    assert "[[reply_to:171.5]]" in event.content
    assert event.metadata["reply_to"] == "171.5"
    assert event.message_id == "171.5"
    assert event.metadata["slack"] == {"thread_ts": "171.0"}


# 测试没有缓存时回退到会话键的情况
def test_build_wake_event_falls_back_to_key() -> None:
    event = build_wake_event(Session(key="cli:direct"), "配置已重新加载")
    assert event.chat_id == "cli:direct"
    assert build_wake_event(Session(key="heartbeat"), "x") is None
