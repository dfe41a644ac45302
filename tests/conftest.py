import asyncio
from copy import deepcopy
from typing import Any

import pytest

from relaybot.bus.queue import MessageBus
from relaybot.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class ScriptedProvider(LLMProvider):
    """按顺序返回预设响应的提供商；记录每次调用。"""

    def __init__(self, responses: list[Any] | None = None, delay: float = 0.0):
        super().__init__()
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        self.calls.append({"messages": deepcopy(messages), "model": model, "tools": tools})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.responses.pop(0) if self.responses else "ok"
        finally:
            self.in_flight -= 1
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return LLMResponse(content=item)
        return item

    def get_default_model(self) -> str:
        return "stub/default"


def tool_call(name: str, arguments: dict[str, Any] | None = None, call_id: str = "call_1") -> LLMResponse:
    return LLMResponse(
        content="",
        tool_calls=[ToolCallRequest(id=call_id, name=name, arguments=arguments or {})],
        finish_reason="tool_calls",
    )


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()
