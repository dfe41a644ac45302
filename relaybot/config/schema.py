"""使用 Pydantic 的配置模式。"""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentDefaults(BaseModel):
    """默认智能体配置。"""
    workspace: str = "~/.relaybot/workspace"
    model: str = "anthropic/claude-opus-4-5"
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = 20
    subagent_max_iterations: int = 15
    history_limit: int = 50  # 构建上下文时带入的历史消息条数
    agent_id: str = "main"
    max_ping_pong_turns: int = 5  # sessions_send 唤醒链的最大深度


class ContextBudgetConfig(BaseModel):
    """输入上下文预算。"""
    context_tokens: int = 200_000
    reserve_tokens_floor: int = 20_000
    soft_threshold_tokens: int = 4_000


class AgentsConfig(BaseModel):
    """智能体配置。"""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    context: ContextBudgetConfig = Field(default_factory=ContextBudgetConfig)


class ProviderConfig(BaseModel):
    """LLM 提供商配置。"""
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None


class ProvidersConfig(BaseModel):
    """LLM 提供商的配置。按此顺序查找第一个可用的密钥。"""
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


class WebSearchConfig(BaseModel):
    """Web 搜索工具配置。"""
    api_key: str = ""  # Brave Search API 密钥
    max_results: int = 5


class WebToolsConfig(BaseModel):
    """Web 工具配置。"""
    search: WebSearchConfig = Field(default_factory=WebSearchConfig)


class ExecToolConfig(BaseModel):
    """Shell 执行工具配置。"""
    timeout: int = 60


class ToolsConfig(BaseModel):
    """工具配置。"""
    web: WebToolsConfig = Field(default_factory=WebToolsConfig)
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    restrict_to_workspace: bool = False  # 为 true 时所有文件/shell 访问限制在工作区内


class Config(BaseSettings):
    """relaybot 的根配置。"""
    model_config = SettingsConfigDict(env_prefix="RELAYBOT_", env_nested_delimiter="__")

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    
    @property
    def workspace_path(self) -> Path:
        """获取展开的工作区路径。"""
        return Path(self.agents.defaults.workspace).expanduser()
    
    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """按模型名中的提供商关键字匹配配置，否则回退到第一个配置了密钥的。"""
        model_lower = (model or self.agents.defaults.model).lower()
        names = list(ProvidersConfig.model_fields)
        for name in names:
            p: ProviderConfig = getattr(self.providers, name)
            if p.api_key and name in model_lower:
                return p
        for name in names:
            p = getattr(self.providers, name)
            if p.api_key:
                return p
        return None
