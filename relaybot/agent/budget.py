"""输入预算裁剪：保证发往模型的消息列表不超过其输入上限。"""

import math
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

DEFAULT_CONTEXT_TOKENS = 200_000
DEFAULT_RESERVE_TOKENS_FLOOR = 20_000
DEFAULT_SOFT_THRESHOLD_TOKENS = 4_000
CHARS_PER_TOKEN = 4

MAX_TOOL_RESULT_CONTEXT_SHARE = 0.3
HARD_MAX_TOOL_RESULT_CHARS = 400_000
MIN_TOOL_RESULT_CHARS = 2_000
MIN_SYSTEM_KEEP_CHARS = 2_000
MIN_USER_KEEP_CHARS = 1_000
FLOOR_SHRINK_RATIO = 0.8
# 收敛保护：地板截断最多尝试的次数，可按需调整
MAX_FLOOR_TRUNCATION_PASSES = 8

TOOL_RESULT_TRUNCATION_SUFFIX = "\n\n⚠️ [Tool result truncated to fit input context budget.]"
CONTEXT_TRUNCATION_SUFFIX = "\n\n⚠️ [Context truncated to fit model input budget.]"


@dataclass
class PruneResult:
    """一次裁剪的结果与各阶段计数。"""
    messages: list[dict[str, Any]]
    estimated_tokens: int
    budget_tokens: int
    dropped_history_count: int = 0
    truncated_tool_result_count: int = 0
    truncated_system_prompt: bool = False
    truncated_user_message: bool = False
    
    @property
    def within_budget(self) -> bool:
        return self.estimated_tokens <= self.budget_tokens
    
    @property
    def changed(self) -> bool:
        return bool(
            self.dropped_history_count
            or self.truncated_tool_result_count
            or self.truncated_system_prompt
            or self.truncated_user_message
        )


class InputBudgetPruner:
    """
    把消息列表裁剪到令牌预算内。
    
    无状态、确定性，不修改输入，可在任意并发上下文中调用。依次执行四个
    逐级升级的阶段（阶段 2 按单条上限总是执行，阶段 3、4 在估算值进入预算后跳过）：
    
    1. 计算预算：context - reserve - soft_threshold（至少为 1）。
    2. 截断过长的工具结果（只处理 role="tool"）。
    3. 逐条移除索引 1 处的历史消息，保留系统消息和最近一次交互（至少 2 条）。
    4. 交替缩短系统提示词和最近一条用户消息，直到进入预算或两者都到达下限。
    
    结果是尽力而为：两个下限都到达后 estimated_tokens 仍可能超出 budget_tokens。
    """
    
    def prune(
        self,
        messages: list[dict[str, Any]],
        context_tokens: int | None = None,
        reserve_tokens_floor: int | None = None,
        soft_threshold_tokens: int | None = None,
    ) -> PruneResult:
        context = _positive_int(context_tokens, DEFAULT_CONTEXT_TOKENS)
        reserve = _non_negative_int(reserve_tokens_floor, DEFAULT_RESERVE_TOKENS_FLOOR)
        soft = _non_negative_int(soft_threshold_tokens, DEFAULT_SOFT_THRESHOLD_TOKENS)
        budget = max(1, context - reserve - soft)
        
        work = [deepcopy(m) for m in messages]
        result = PruneResult(messages=work, estimated_tokens=0, budget_tokens=budget)
        
        # 阶段 2：工具结果截断
        max_tool_chars = min(
            HARD_MAX_TOOL_RESULT_CHARS,
            max(MIN_TOOL_RESULT_CHARS, math.floor(context * MAX_TOOL_RESULT_CONTEXT_SHARE * CHARS_PER_TOKEN)),
        )
        for msg in work:
            if msg.get("role") != "tool":
                continue
            content = msg.get("content")
            if isinstance(content, str) and len(content) > max_tool_chars:
                msg["content"] = truncate_text(content, max_tool_chars, TOOL_RESULT_TRUNCATION_SUFFIX)
                result.truncated_tool_result_count += 1
        
        # 阶段 3：历史淘汰
        while estimate_tokens(work) > budget and len(work) > 2:
            del work[1]
            result.dropped_history_count += 1
        
        # 阶段 4：地板截断
        prefer_system = True
        for _ in range(MAX_FLOOR_TRUNCATION_PASSES):
            if estimate_tokens(work) <= budget:
                break
            order = ("system", "user") if prefer_system else ("user", "system")
            shrunk = None
            for role in order:
                if _shrink_last(work, role):
                    shrunk = role
                    break
            if shrunk is None:
                break
            if shrunk == "system":
                result.truncated_system_prompt = True
            else:
                result.truncated_user_message = True
            prefer_system = shrunk != "system"
        
        result.estimated_tokens = estimate_tokens(work)
        return result


_default_pruner = InputBudgetPruner()


def prune(
    messages: list[dict[str, Any]],
    context_tokens: int | None = None,
    reserve_tokens_floor: int | None = None,
    soft_threshold_tokens: int | None = None,
) -> PruneResult:
    """InputBudgetPruner().prune 的便捷函数。"""
    return _default_pruner.prune(messages, context_tokens, reserve_tokens_floor, soft_threshold_tokens)


def _shrink_last(work: list[dict[str, Any]], role: str) -> bool:
    """把系统消息（第一条）或最近一条用户消息缩短到 80%，已到下限时返回 False。"""
    floor = MIN_SYSTEM_KEEP_CHARS if role == "system" else MIN_USER_KEEP_CHARS
    indices = [i for i, m in enumerate(work) if m.get("role") == role]
    if not indices:
        return False
    index = indices[0] if role == "system" else indices[-1]
    content = work[index].get("content")
    if not isinstance(content, str) or len(content) <= floor:
        return False
    target = max(floor, math.floor(len(content) * FLOOR_SHRINK_RATIO))
    work[index]["content"] = truncate_text(content, target)
    return True


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    """按每 4 个字符 1 个令牌估算消息列表的令牌数。"""
    return math.ceil(sum(estimate_chars(m) for m in messages) / CHARS_PER_TOKEN)


def estimate_chars(value: Any) -> int:
    """结构化遍历：字符串按长度、数字/布尔按文本形式、嵌套结构递归（字典键也计入）。"""
    if isinstance(value, str):
        return len(value)
    if isinstance(value, bool):
        return 4 if value else 5
    if isinstance(value, (int, float)):
        return len(str(value))
    if isinstance(value, dict):
        return sum(len(str(k)) + estimate_chars(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return sum(estimate_chars(item) for item in value)
    return 0


def truncate_text(text: str, max_chars: int, suffix: str = CONTEXT_TRUNCATION_SUFFIX) -> str:
    """截断到 max_chars（含后缀）；空间不足以容纳后缀时直接切片。"""
    if len(text) <= max_chars:
        return text
    safe_max = max(64, max_chars)
    if safe_max <= len(suffix) + 16:
        return text[:safe_max]
    keep = safe_max - len(suffix)
    return text[:keep].rstrip() + suffix


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    value = math.floor(value)
    return value if value > 0 else default


def _non_negative_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    value = math.floor(value)
    return value if value >= 0 else default
