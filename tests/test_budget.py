from copy import deepcopy

from relaybot.agent.budget import (
    CONTEXT_TRUNCATION_SUFFIX,
    MIN_SYSTEM_KEEP_CHARS,
    MIN_USER_KEEP_CHARS,
    TOOL_RESULT_TRUNCATION_SUFFIX,
    InputBudgetPruner,
    estimate_tokens,
    prune,
    truncate_text,
)


def _conversation(history_chars: int, turns: int) -> list[dict]:
    messages = [{"role": "system", "content": "你是助手。"}]
    for i in range(turns):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append({"role": role, "content": f"{i}" * history_chars})
    messages.append({"role": "user", "content": "最后一个问题"})
    return messages


# 测试预算内的输入原样返回的情况
def test_prune_within_budget_is_identity() -> None:
    messages = _conversation(100, 4)
    result = prune(messages)
    assert result.messages == messages
    assert result.budget_tokens == 176_000
    assert not result.changed
    assert result.within_budget


# 测试输入不被修改的情况
def test_prune_does_not_mutate_input() -> None:
    messages = [
        {"role": "system", "content": "s" * 50_000},
        {"role": "tool", "tool_call_id": "1", "name": "read_file", "content": "x" * 500_000},
        {"role": "user", "content": "u" * 50_000},
    ]
    snapshot = deepcopy(messages)
    InputBudgetPruner().prune(messages, context_tokens=5_000, reserve_tokens_floor=0, soft_threshold_tokens=0)
    assert messages == snapshot


# 测试单个超大工具结果被截断到上限的情况
def test_oversized_tool_result_truncated() -> None:
    messages = [
        {"role": "system", "content": "系统"},
        {"role": "user", "content": "读一下日志"},
        {"role": "tool", "tool_call_id": "c1", "name": "read_file", "content": "x" * 500_000},
    ]
    result = prune(messages)
    content = result.messages[2]["content"]
    assert len(content) == 240_000
    assert content.endswith(TOOL_RESULT_TRUNCATION_SUFFIX)
    assert result.truncated_tool_result_count == 1
    assert result.dropped_history_count == 0


# 测试只截断 tool 角色消息的情况
def test_only_tool_messages_truncated_in_tool_pass() -> None:
    messages = [
        {"role": "system", "content": "系统"},
        {"role": "assistant", "content": "a" * 300_000},
        {"role": "user", "content": "继续"},
    ]
    result = prune(messages, context_tokens=1_000_000)
    assert result.messages[1]["content"] == "a" * 300_000
    assert result.truncated_tool_result_count == 0


# 测试历史淘汰保留系统消息与最近一条用户消息的情况
def test_history_eviction_keeps_system_and_latest_turn() -> None:
    messages = _conversation(10_000, 10)
    result = prune(messages, context_tokens=10_000, reserve_tokens_floor=0, soft_threshold_tokens=0)

    assert result.dropped_history_count > 0
    assert result.messages[0] == messages[0]
    assert result.messages[-1] == messages[-1]
    assert result.within_budget
    # 被淘汰的是最旧的历史
    assert result.messages[1:-1] == messages[1 + result.dropped_history_count:-1]


# 测试地板截断交替缩短系统与用户消息且不低于下限的情况
def test_floor_truncation_respects_minimums() -> None:
    messages = [
        {"role": "system", "content": "s" * 3_000},
        {"role": "user", "content": "u" * 3_000},
    ]
    result = prune(messages, context_tokens=100, reserve_tokens_floor=0, soft_threshold_tokens=0)

    assert result.truncated_system_prompt
    assert result.truncated_user_message
    assert len(result.messages[0]["content"]) == MIN_SYSTEM_KEEP_CHARS
    assert len(result.messages[1]["content"]) == MIN_USER_KEEP_CHARS
    assert result.messages[0]["content"].endswith(CONTEXT_TRUNCATION_SUFFIX)
    # 尽力而为：两个下限都到达后仍可能超出预算
    assert not result.within_budget


# 测试地板截断有次数上限的情况
def test_floor_truncation_is_bounded() -> None:
    messages = [
        {"role": "system", "content": "s" * 100_000},
        {"role": "user", "content": "u" * 100_000},
    ]
    result = prune(messages, context_tokens=10_000, reserve_tokens_floor=0, soft_threshold_tokens=0)

    assert len(result.messages) == 2
    assert len(result.messages[0]["content"]) < 100_000
    assert len(result.messages[1]["content"]) < 100_000
    assert result.estimated_tokens < estimate_tokens(messages)


# 测试非法预算参数回退为默认值的情况
def test_invalid_budget_inputs_fall_back() -> None:
    messages = [{"role": "user", "content": "hi"}]
    assert prune(messages, context_tokens=-5).budget_tokens == 176_000
    assert prune(messages, reserve_tokens_floor=-1).budget_tokens == 176_000
    assert prune(messages, context_tokens=100, reserve_tokens_floor=500).budget_tokens == 1


# 测试令牌估算的情况
def test_estimate_tokens_counts_structure() -> None:
    # "role" + "user" + "content" + "abcd" = 19 字符
    assert estimate_tokens([{"role": "user", "content": "abcd"}]) == 5
    assert estimate_tokens([]) == 0


# 测试截断文本长度包含后缀的情况
def test_truncate_text_includes_suffix_in_length() -> None:
    text = truncate_text("x" * 5_000, 1_000)
    assert len(text) == 1_000
    assert text.endswith(CONTEXT_TRUNCATION_SUFFIX)
    assert truncate_text("short", 1_000) == "short"
