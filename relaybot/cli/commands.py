"""relaybot 的 CLI 命令。"""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from relaybot import __version__, __logo__

app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - 个人助手网关",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} relaybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """relaybot - 个人助手网关。"""
    pass


def _set_verbose(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """初始化 relaybot 配置和工作空间。"""
    from relaybot.config.loader import get_config_path, save_config
    from relaybot.config.schema import Config
    from relaybot.utils.helpers import ensure_dir

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]配置已存在于 {config_path}[/yellow]")
        if not typer.confirm("覆盖？"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] 已在 {config_path} 创建配置")

    workspace = ensure_dir(config.workspace_path)
    ensure_dir(workspace / "memory")
    console.print(f"[green]✓[/green] 已在 {workspace} 创建工作空间")
    console.print(f"\n{__logo__} relaybot 已就绪！")
    console.print("  1. 将您的 API 密钥添加到 [cyan]~/.relaybot/config.json[/cyan]")
    console.print("  2. 聊天：[cyan]relaybot agent -m \"你好！\"[/cyan]")


def _make_provider(config):
    """从配置创建 LiteLLMProvider。如果未找到 API 密钥则退出。"""
    from relaybot.providers.litellm_provider import LiteLLMProvider
    p = config.get_provider()
    model = config.agents.defaults.model
    if not (p and (p.api_key or p.api_base)) and not model.startswith("bedrock/"):
        console.print("[red]错误：未配置 API 密钥。[/red]")
        console.print("在 ~/.relaybot/config.json 的 providers 部分下设置一个")
        raise typer.Exit(1)
    return LiteLLMProvider(
        api_key=p.api_key if p else None,
        api_base=p.api_base if p else None,
        default_model=model,
        extra_headers=p.extra_headers if p else None,
    )


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
):
    """启动 relaybot 网关（终端作为 cli 通道）。"""
    from relaybot.config.loader import load_config
    from relaybot.bus.events import InboundMessage, OutboundMessage
    from relaybot.bus.queue import MessageBus
    from relaybot.agent.loop import AgentLoop

    _set_verbose(verbose)
    config = load_config()
    bus = MessageBus()
    provider = _make_provider(config)
    agent = AgentLoop.from_config(config, bus, provider)

    async def print_outbound(msg: OutboundMessage) -> None:
        target = f" ↪ {msg.reply_to}" if msg.reply_to else ""
        console.print(f"\n{__logo__}{target} {msg.content}\n")

    bus.subscribe_outbound("cli", print_outbound)
    console.print(f"{__logo__} relaybot 网关已启动（Ctrl+C 退出）\n")

    async def read_console() -> None:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if line.strip():
                await bus.publish_inbound(InboundMessage(
                    channel="cli", sender_id="user", chat_id="gateway", content=line.strip()
                ))
        agent.stop()
        bus.stop()

    async def run():
        try:
            await asyncio.gather(
                agent.run(),
                bus.dispatch_outbound(),
                read_console(),
            )
        except KeyboardInterrupt:
            console.print("\n正在关闭...")
            agent.stop()
            bus.stop()

    asyncio.run(run())


# ============================================================================
# Agent Commands
# ============================================================================


@app.command()
def agent(
    message: str = typer.Option(None, "--message", "-m", help="发送给智能体的消息"),
    session_id: str = typer.Option("cli:direct", "--session", "-s", help="会话 ID"),
    model: str = typer.Option(None, "--model", help="为该会话切换模型"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
):
    """直接与智能体交互。"""
    from relaybot.config.loader import load_config
    from relaybot.bus.queue import MessageBus
    from relaybot.agent.loop import AgentLoop

    _set_verbose(verbose)
    config = load_config()
    bus = MessageBus()
    provider = _make_provider(config)
    agent_loop = AgentLoop.from_config(config, bus, provider)
    metadata = {"model": model} if model else None

    if message:
        # 单条消息模式
        async def run_once():
            response = await agent_loop.process_direct(message, session_id, metadata=metadata)
            console.print(f"\n{__logo__} {response}")

        asyncio.run(run_once())
    else:
        # 交互模式
        console.print(f"{__logo__} 交互模式（Ctrl+C 退出）\n")

        async def run_interactive():
            while True:
                try:
                    user_input = console.input("[bold blue]您：[/bold blue] ")
                    if not user_input.strip():
                        continue

                    response = await agent_loop.process_direct(user_input, session_id, metadata=metadata)
                    console.print(f"\n{__logo__} {response}\n")
                except (KeyboardInterrupt, EOFError):
                    console.print("\n再见！")
                    break
                except Exception as e:
                    console.print(f"[red]抱歉，我遇到了错误：{e}[/red]\n")

        asyncio.run(run_interactive())


@app.command()
def notify(
    session_key: str = typer.Argument(..., help="要唤醒的会话键"),
    summary: str = typer.Argument(..., help="事件摘要，例如“网关已重启”"),
):
    """按会话缓存的投递上下文发送一条唤醒通知（例如重启后）。"""
    from relaybot.config.loader import load_config
    from relaybot.bus.queue import MessageBus
    from relaybot.agent.delivery import build_wake_event
    from relaybot.agent.loop import AgentLoop
    from relaybot.session.manager import SessionManager

    config = load_config()
    sessions = SessionManager(config.workspace_path)
    session = sessions.get_if_exists(session_key)
    if session is None:
        console.print(f"[red]会话 {session_key} 不存在[/red]")
        raise typer.Exit(1)
    event = build_wake_event(session, summary)
    if event is None:
        console.print(f"[red]会话 {session_key} 没有可用的投递上下文[/red]")
        raise typer.Exit(1)

    bus = MessageBus()
    agent_loop = AgentLoop.from_config(config, bus, _make_provider(config), session_manager=sessions)

    async def run_once():
        response = await agent_loop.handle_inbound(event)
        if response is None:
            console.print("[dim]智能体选择不回复[/dim]")
            return
        console.print(f"{response.channel}:{response.chat_id} ← {response.content}")

    asyncio.run(run_once())


# ============================================================================
# Status
# ============================================================================


@app.command()
def sessions():
    """列出已保存的会话。"""
    from relaybot.config.loader import load_config
    from relaybot.session.manager import SessionManager

    config = load_config()
    table = Table(title="Sessions")
    table.add_column("Key", style="cyan")
    table.add_column("Updated", style="green")
    table.add_column("Last target", style="yellow")
    table.add_column("Model", style="magenta")

    for info in SessionManager(config.workspace_path).list_sessions():
        meta = info["metadata"]
        last = f"{meta['last_channel']}:{meta['last_to']}" if meta.get("last_channel") else "-"
        table.add_row(info["key"], str(info["updated_at"] or "-"), last, meta.get("preferred_model") or "-")

    console.print(table)


@app.command()
def status():
    """显示 relaybot 状态。"""
    from relaybot.config.loader import load_config, get_config_path
    from relaybot.config.schema import ProvidersConfig

    config_path = get_config_path()
    config = load_config()
    workspace = config.workspace_path

    console.print(f"{__logo__} relaybot 状态\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Workspace: {workspace} {'[green]✓[/green]' if workspace.exists() else '[red]✗[/red]'}")
    console.print(f"Model: {config.agents.defaults.model}")
    budget = config.agents.context
    console.print(
        f"Context budget: {budget.context_tokens} - {budget.reserve_tokens_floor} - {budget.soft_threshold_tokens}"
    )

    for name in ProvidersConfig.model_fields:
        p = getattr(config.providers, name)
        if p.api_base and not p.api_key:
            console.print(f"{name}: [green]✓ {p.api_base}[/green]")
        else:
            console.print(f"{name}: {'[green]✓[/green]' if p.api_key else '[dim]not set[/dim]'}")


if __name__ == "__main__":
    app()
