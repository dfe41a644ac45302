import asyncio

from conftest import ScriptedProvider, tool_call
from relaybot.agent.loop import AgentLoop, PREFERRED_MODEL_KEY
from relaybot.bus.events import InboundMessage
from relaybot.config.schema import Config, ContextBudgetConfig
from relaybot.session.manager import SessionManager, enqueue_pending_system_event


def _loop(bus, tmp_path, provider, **kwargs) -> AgentLoop:
    return AgentLoop(bus=bus, provider=provider, workspace=tmp_path, **kwargs)


def _user(content: str, chat_id: str = "42", **metadata) -> InboundMessage:
    return InboundMessage(channel="telegram", sender_id="u1", chat_id=chat_id, content=content, metadata=metadata)


def _last_user_content(call: dict) -> str:
    return [m for m in call["messages"] if m["role"] == "user"][-1]["content"]


# 测试普通回复被记录并返回的情况
async def test_simple_reply(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["你好！"]))
    out = await loop.handle_inbound(_user("嗨"))

    assert out.channel == "telegram"
    assert out.chat_id == "42"
    assert out.content == "你好！"
    assert out.reply_to is None

    session = SessionManager(tmp_path).get_or_create("telegram:42")
    assert [(m["role"], m["content"]) for m in session.messages] == [("user", "嗨"), ("assistant", "你好！")]


# 测试 process_direct 返回文本的情况
async def test_process_direct(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["pong"]))
    assert await loop.process_direct("ping") == "pong"
    assert loop.sessions.get_or_create("cli:direct").messages[-1]["content"] == "pong"


# 测试模型返回静默标记时不回复的情况
async def test_silent_marker_suppresses_reply(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["收到，无需回复。NO_REPLY"]))
    assert await loop.handle_inbound(_user("记一下")) is None

    session = SessionManager(tmp_path).get_or_create("telegram:42")
    assert session.messages[-1]["role"] == "assistant"
    assert bus.outbound_size == 0


# 测试空的最终回复被丢弃的情况
async def test_empty_final_content_dropped(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["   "]))
    assert await loop.handle_inbound(_user("?")) is None
    assert await loop.process_direct("?") == ""


# 测试工具调用往返被记录到历史的情况
async def test_tool_round_trip(bus, tmp_path) -> None:
    (tmp_path / "notes.txt").write_text("买牛奶", encoding="utf-8")
    provider = ScriptedProvider([tool_call("read_file", {"path": "notes.txt"}), "记得买牛奶"])
    loop = _loop(bus, tmp_path, provider)

    out = await loop.handle_inbound(_user("我的笔记写了什么？"))
    assert out.content == "记得买牛奶"

    second = provider.calls[1]["messages"]
    assert second[-1]["role"] == "tool"
    assert second[-1]["content"] == "买牛奶"
    assert second[-2]["tool_calls"][0]["function"]["name"] == "read_file"

    roles = [m["role"] for m in loop.sessions.get_or_create("telegram:42").messages]
    assert roles == ["user", "assistant", "tool", "assistant"]


# 测试工具错误以文本形式回到模型的情况
async def test_unknown_tool_error_goes_back_to_model(bus, tmp_path) -> None:
    provider = ScriptedProvider([tool_call("does_not_exist"), "抱歉，做不到"])
    loop = _loop(bus, tmp_path, provider)

    out = await loop.handle_inbound(_user("试试"))
    assert out.content == "抱歉，做不到"
    assert provider.calls[1]["messages"][-1]["content"] == "错误：未找到工具 'does_not_exist'"


# 测试迭代次数耗尽时不回复但保存会话的情况
async def test_iteration_exhaustion_returns_none(bus, tmp_path) -> None:
    provider = ScriptedProvider([tool_call("list_dir", {"path": "."}, f"c{i}") for i in range(5)])
    loop = _loop(bus, tmp_path, provider, max_iterations=2)

    assert await loop.handle_inbound(_user("一直调用工具")) is None
    assert len(provider.calls) == 2

    session = SessionManager(tmp_path).get_or_create("telegram:42")
    assert [m["role"] for m in session.messages] == ["user", "assistant", "tool", "assistant", "tool"]


# 测试模型覆盖被记住并可清除的情况
async def test_model_override_persists_and_clears(bus, tmp_path) -> None:
    provider = ScriptedProvider(["a", "b", "c"])
    loop = _loop(bus, tmp_path, provider, model="anthropic/claude-opus-4-5")

    await loop.handle_inbound(_user("用 gpt", model="openai/gpt-4o"))
    await loop.handle_inbound(_user("继续"))
    assert [c["model"] for c in provider.calls[:2]] == ["openai/gpt-4o", "openai/gpt-4o"]
    assert loop.sessions.get_or_create("telegram:42").metadata[PREFERRED_MODEL_KEY] == "openai/gpt-4o"

    await loop.handle_inbound(_user("换回默认", clear_model=True))
    assert provider.calls[2]["model"] == "anthropic/claude-opus-4-5"
    assert PREFERRED_MODEL_KEY not in loop.sessions.get_or_create("telegram:42").metadata


# 测试待处理系统事件作为前缀注入的情况
async def test_pending_events_prefixed(bus, tmp_path) -> None:
    provider = ScriptedProvider(["好的"])
    loop = _loop(bus, tmp_path, provider)
    enqueue_pending_system_event(loop.sessions, "telegram:42", "网关已重启")

    await loop.handle_inbound(_user("你好"))
    assert _last_user_content(provider.calls[0]) == "[System Message] 网关已重启\n\n你好"
    assert "pending_system_events" not in loop.sessions.get_or_create("telegram:42").metadata


# 测试回复指令解析为回复目标的情况
async def test_reply_directive_sets_reply_to(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["[[reply_to_current]] 明白了"]))
    out = await loop.handle_inbound(_user("在吗", message_id="m9"))

    assert out.content == "明白了"
    assert out.reply_to == "m9"
    assert out.metadata["message_id"] == "m9"


# 测试投递上下文被缓存到会话的情况
async def test_delivery_context_cached(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["ok"]))
    await loop.handle_inbound(InboundMessage(
        channel="slack",
        sender_id="U1",
        chat_id="C1",
        content="hi",
        metadata={"message_id": "m1", "accountId": "acc-1", "slack": {"thread_ts": "1.2", "team": "x"}},
    ))

    metadata = SessionManager(tmp_path).get_or_create("slack:C1").metadata
    assert metadata["delivery_context"] == {
        "channel": "slack",
        "chat_id": "C1",
        "reply_to": "m1",
        "account_id": "acc-1",
        "metadata": {"slack": {"thread_ts": "1.2"}},
    }
    assert metadata["last_channel"] == "slack"
    assert metadata["last_to"] == "C1"
    assert metadata["last_account_id"] == "acc-1"


# 测试系统事件路由回来源会话的情况
async def test_system_event_routed_to_origin(bus, tmp_path) -> None:
    provider = ScriptedProvider(["后台任务完成了"])
    loop = _loop(bus, tmp_path, provider)
    event = await bus.publish_system_event("subagent", "telegram", "42", "结果：3 个文件")
    await bus.consume_inbound()

    out = await loop.handle_inbound(event)
    assert (out.channel, out.chat_id) == ("telegram", "42")

    session = loop.sessions.get_or_create("telegram:42")
    assert session.messages[0]["content"] == "[System: subagent] 结果：3 个文件"
    assert loop.sessions.get_if_exists("system:telegram:42") is None


# 测试消息工具发往当前会话的情况
async def test_message_tool_uses_turn_route(bus, tmp_path) -> None:
    provider = ScriptedProvider([tool_call("message", {"content": "进度 50%"}), "NO_REPLY"])
    loop = _loop(bus, tmp_path, provider)

    assert await loop.handle_inbound(_user("开始")) is None
    sent = await bus.consume_outbound()
    assert (sent.channel, sent.chat_id, sent.content) == ("telegram", "42", "进度 50%")


# 测试同一会话串行、不同会话并行的情况
async def test_per_session_serialization(bus, tmp_path) -> None:
    provider = ScriptedProvider(["1", "2"], delay=0.05)
    loop = _loop(bus, tmp_path, provider)
    await asyncio.gather(loop.handle_inbound(_user("a")), loop.handle_inbound(_user("b")))
    assert provider.max_in_flight == 1

    provider = ScriptedProvider(["1", "2"], delay=0.05)
    loop = _loop(bus, tmp_path, provider)
    await asyncio.gather(loop.handle_inbound(_user("a", "1")), loop.handle_inbound(_user("b", "2")))
    assert provider.max_in_flight == 2


# 测试超大工具结果在发送前被裁剪的情况
async def test_budget_applied_before_provider_call(bus, tmp_path) -> None:
    (tmp_path / "big.log").write_text("x" * 150_000, encoding="utf-8")
    provider = ScriptedProvider([tool_call("read_file", {"path": "big.log"}), "很长的日志"])
    loop = _loop(bus, tmp_path, provider, context_budget=ContextBudgetConfig(context_tokens=100_000))

    await loop.handle_inbound(_user("读日志"))
    sent_tool = provider.calls[1]["messages"][-1]
    assert sent_tool["role"] == "tool"
    assert len(sent_tool["content"]) == 120_000
    # 会话中保留的是完整结果
    stored = [m for m in loop.sessions.get_or_create("telegram:42").messages if m["role"] == "tool"]
    assert len(stored[0]["content"]) == 150_000


# 测试 run 循环在异常时发送道歉的情况
async def test_run_sends_apology_on_error(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider([RuntimeError("上游超时")]))
    task = asyncio.create_task(loop.run())
    await bus.publish_inbound(_user("你好"))

    out = await asyncio.wait_for(bus.consume_outbound(), timeout=5)
    loop.stop()
    await task

    assert (out.channel, out.chat_id) == ("telegram", "42")
    assert out.content == "抱歉，我遇到了错误：上游超时"


# 测试会话锁在轮次结束后被释放的情况
async def test_session_locks_released_after_turn(bus, tmp_path) -> None:
    loop = _loop(bus, tmp_path, ScriptedProvider(["1", "2"]))
    await loop.handle_inbound(_user("a", "1"))
    await loop.handle_inbound(_user("b", "2"))
    assert "telegram:1" not in loop._session_locks
    assert len(loop._session_locks) == 0


# 测试搜索结果数量配置传到工具的情况
async def test_search_max_results_from_config(bus, tmp_path) -> None:
    config = Config()
    config.agents.defaults.workspace = str(tmp_path)
    config.tools.web.search.max_results = 3
    loop = AgentLoop.from_config(config, bus, ScriptedProvider())

    assert loop.tools.get("web_search").max_results == 3
    assert loop.subagents._build_tools().get("web_search").max_results == 3
