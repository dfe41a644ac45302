"""基于 LiteLLM 的多提供商实现。"""

import json
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from relaybot.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class LiteLLMProvider(LLMProvider):
    """
    通过 LiteLLM 统一接口访问 OpenRouter、Anthropic、OpenAI、DeepSeek 等提供商。
    
    调用失败时记录错误并重新抛出：智能体循环据此发送道歉，子智能体据此以 error 状态通知。
    """
    
    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-opus-4-5",
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        # 禁用 LiteLLM 日志噪音
        litellm.suppress_debug_info = True
    
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        
        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM 调用失败（{kwargs['model']}）：{e}")
            raise
        return self._parse_response(response)
    
    def _parse_response(self, response: Any) -> LLMResponse:
        """将 LiteLLM 响应解析为标准格式。"""
        choice = response.choices[0]
        message = choice.message
        
        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            args = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=args or {}))
        
        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        
        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None),
        )
    
    def get_default_model(self) -> str:
        return self.default_model
