import json

from conftest import ScriptedProvider
from relaybot.agent.subagent import SubagentManager
from relaybot.agent.tools.subagents import SubagentsTool, resolve_target

RUNS = [
    {"id": "aaaa1111", "label": "日志", "started_at": "2026-01-01T10:00:00"},
    {"id": "bbbb2222", "label": "报告", "started_at": "2026-01-01T11:00:00"},
    {"id": "cccc3333", "label": "报告", "started_at": "2026-01-01T12:00:00"},
]


# 测试目标解析的情况
def test_resolve_target() -> None:
    assert resolve_target("last", RUNS)["id"] == "cccc3333"
    assert resolve_target("1", RUNS)["id"] == "cccc3333"
    assert resolve_target("3", RUNS)["id"] == "aaaa1111"
    assert resolve_target("4", RUNS) is None
    assert resolve_target("bbbb2222", RUNS)["id"] == "bbbb2222"
    assert resolve_target("日志", RUNS)["id"] == "aaaa1111"
    # 标签不唯一时不解析
    assert resolve_target("报告", RUNS) is None
    assert resolve_target("  ", RUNS) is None
    assert resolve_target("last", []) is None


# 测试 list / steer / kill 操作的情况
async def test_list_steer_kill(bus, tmp_path) -> None:
    manager = SubagentManager(provider=ScriptedProvider(["完成"], delay=0.05), workspace=tmp_path, bus=bus)
    tool = SubagentsTool(manager)
    await manager.spawn("整理下载目录", label="整理")

    listed = json.loads(await tool.execute(action="list"))
    assert [r["label"] for r in listed["runs"]] == ["整理"]
    run_id = listed["runs"][0]["id"]

    assert await tool.execute(action="steer", target="last", message="跳过图片") == f"子智能体 {run_id} 已收到引导"
    assert await tool.execute(action="kill", target="整理") == f"子智能体 {run_id} 已终止"
    assert await tool.execute(action="kill", target=run_id) == f"子智能体 {run_id} 未在运行"
    assert await tool.execute(action="steer", target=run_id, message="x") == f"子智能体 {run_id} 未在运行"


# 测试参数错误的情况
async def test_invalid_requests(bus, tmp_path) -> None:
    tool = SubagentsTool(SubagentManager(provider=ScriptedProvider(), workspace=tmp_path, bus=bus))
    assert (await tool.execute(action="kill")).startswith("错误")
    assert (await tool.execute(action="steer", target="last")).startswith("错误")
    assert (await tool.execute(action="kill", target="nope")).startswith("错误：未找到子智能体")
    assert json.loads(await tool.execute(action="list", recent_minutes=5)) == {"runs": []}
