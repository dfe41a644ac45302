from relaybot.session.manager import (
    MAX_PENDING_SYSTEM_EVENTS,
    PENDING_SYSTEM_EVENTS_KEY,
    SessionManager,
    drain_pending_system_events,
    enqueue_pending_system_event,
)


# 测试会话保存后可从磁盘重新加载的情况
def test_save_and_reload(tmp_path) -> None:
    manager = SessionManager(tmp_path)
    session = manager.get_or_create("telegram:42")
    session.add_message("user", "你好")
    session.add_message("assistant", "", tool_calls=[{"id": "c1"}], reasoning_content="想一想")
    session.add_message("tool", "ok", tool_call_id="c1", name="read_file")
    session.metadata["preferred_model"] = "openai/gpt-4o"
    manager.save(session)

    reloaded = SessionManager(tmp_path).get_or_create("telegram:42")
    assert reloaded.metadata["preferred_model"] == "openai/gpt-4o"
    history = reloaded.get_history()
    assert [m["role"] for m in history] == ["user", "assistant", "tool"]
    assert history[1]["tool_calls"] == [{"id": "c1"}]
    assert history[1]["reasoning_content"] == "想一想"
    assert history[2]["tool_call_id"] == "c1"
    assert "timestamp" not in history[0]


# 测试历史窗口不以工具结果开头的情况
def test_history_skips_leading_tool_messages(tmp_path) -> None:
    session = SessionManager(tmp_path).get_or_create("cli:direct")
    session.add_message("assistant", "", tool_calls=[{"id": "c1"}])
    session.add_message("tool", "r1", tool_call_id="c1", name="x")
    session.add_message("assistant", "完成")
    history = session.get_history(max_messages=2)
    assert [m["role"] for m in history] == ["assistant"]


# 测试列出会话的情况
def test_list_sessions(tmp_path) -> None:
    manager = SessionManager(tmp_path)
    manager.save(manager.get_or_create("slack:C1"))
    manager.save(manager.get_or_create("cli:direct"))
    keys = {info["key"] for info in manager.list_sessions()}
    assert keys == {"slack:C1", "cli:direct"}
    assert manager.delete("slack:C1")
    assert not manager.delete("slack:C1")


# 测试待处理系统事件入队与取出的情况
def test_pending_events_enqueue_and_drain(tmp_path) -> None:
    manager = SessionManager(tmp_path)
    assert enqueue_pending_system_event(manager, "cli:direct", "网关已重启")
    # 与队尾重复的事件被跳过
    assert not enqueue_pending_system_event(manager, "cli:direct", "网关已重启 ")
    assert not enqueue_pending_system_event(manager, "cli:direct", "   ")
    assert enqueue_pending_system_event(manager, "cli:direct", "配置已更新")

    # 落盘后重新加载仍然存在
    session = SessionManager(tmp_path).get_or_create("cli:direct")
    assert drain_pending_system_events(session) == ["网关已重启", "配置已更新"]
    assert PENDING_SYSTEM_EVENTS_KEY not in session.metadata
    assert drain_pending_system_events(session) == []


# 测试收件箱容量上限的情况
def test_pending_events_capped(tmp_path) -> None:
    manager = SessionManager(tmp_path)
    for i in range(MAX_PENDING_SYSTEM_EVENTS + 5):
        enqueue_pending_system_event(manager, "cli:direct", f"事件 {i}")
    events = drain_pending_system_events(manager.get_or_create("cli:direct"))
    assert len(events) == MAX_PENDING_SYSTEM_EVENTS
    assert events[0] == "事件 5"
