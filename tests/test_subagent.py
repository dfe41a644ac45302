import asyncio

from conftest import ScriptedProvider, tool_call
from relaybot.agent.subagent import NO_FINAL_RESPONSE, SubagentManager, SubagentStatus


def _manager(bus, tmp_path, provider) -> SubagentManager:
    return SubagentManager(provider=provider, workspace=tmp_path, bus=bus, model="stub/sub")


async def _wait_all(manager: SubagentManager) -> None:
    tasks = list(manager._tasks.values())
    if tasks:
        await asyncio.gather(*tasks)


# 测试 spawn 立即返回并在完成后通知来源会话的情况
async def test_spawn_returns_immediately_and_announces(bus, tmp_path) -> None:
    provider = ScriptedProvider(["统计完成：3 个文件"], delay=0.05)
    manager = _manager(bus, tmp_path, provider)

    reply = await manager.spawn("统计文件", label="统计", origin_channel="telegram", origin_chat_id="42")
    assert "统计" in reply
    run = manager.list_runs()[0]
    assert run["status"] == "running"
    assert run["id"] in reply

    await _wait_all(manager)
    event = await asyncio.wait_for(bus.consume_inbound(), timeout=1)
    assert event.is_system
    assert event.chat_id == "telegram:42"
    assert event.sender_id == "subagent"
    assert "统计完成：3 个文件" in event.content
    assert event.metadata == {"subagent_id": run["id"], "subagent_status": "done"}
    assert manager.get_run(run["id"]).status == SubagentStatus.DONE
    assert provider.calls[0]["model"] == "stub/sub"


# 测试取消后不再通知的情况
async def test_cancelled_run_never_announces(bus, tmp_path) -> None:
    manager = _manager(bus, tmp_path, ScriptedProvider(["晚到的结果"], delay=0.05))
    await manager.spawn("慢任务")
    run_id = manager.list_runs()[0]["id"]

    assert manager.cancel_run(run_id)
    assert manager.get_run(run_id).status == SubagentStatus.CANCELLED
    assert not manager.cancel_run(run_id)

    await _wait_all(manager)
    assert bus.inbound_size == 0
    assert manager.get_run(run_id).status == SubagentStatus.CANCELLED
    assert manager.get_running_count() == 0


# 测试引导说明在下一轮注入的情况
async def test_steer_injected_as_user_turn(bus, tmp_path) -> None:
    provider = ScriptedProvider(["好的"])
    manager = _manager(bus, tmp_path, provider)
    await manager.spawn("检查日志")
    run_id = manager.list_runs()[0]["id"]

    assert manager.steer_run(run_id, "只看错误")
    await _wait_all(manager)

    assert provider.calls[0]["messages"][-1] == {"role": "user", "content": "Steer: 只看错误"}
    # 已结束的运行不能再引导
    assert not manager.steer_run(run_id, "再看看警告")
    assert len(manager.get_run(run_id).steer_queue) == 0
    assert not manager.steer_run("missing", "x")


# 测试失败的运行以 error 状态通知的情况
async def test_failed_run_announces_error(bus, tmp_path) -> None:
    manager = _manager(bus, tmp_path, ScriptedProvider([RuntimeError("模型不可用")]))
    await manager.spawn("做点什么", origin_channel="cli", origin_chat_id="direct")
    await _wait_all(manager)

    event = await asyncio.wait_for(bus.consume_inbound(), timeout=1)
    assert event.metadata["subagent_status"] == "error"
    assert "模型不可用" in event.content
    run = manager.list_runs()[0]
    assert run["status"] == "error"
    assert run["finished_at"] is not None


# 测试子智能体迭代耗尽时以默认结果通知的情况
async def test_exhausted_run_announces_fallback(bus, tmp_path) -> None:
    provider = ScriptedProvider([tool_call("list_dir", {"path": "."}, f"c{i}") for i in range(3)])
    manager = SubagentManager(provider=provider, workspace=tmp_path, bus=bus, max_iterations=2)
    await manager.spawn("一直列目录", origin_channel="cli", origin_chat_id="direct")
    await _wait_all(manager)

    assert len(provider.calls) == 2
    run = manager.list_runs()[0]
    assert run["status"] == "done"
    event = await asyncio.wait_for(bus.consume_inbound(), timeout=1)
    assert event.metadata["subagent_status"] == "done"
    assert NO_FINAL_RESPONSE in event.content
