from relaybot.agent.tools.base import ToolContext
from relaybot.agent.tools.message import MessageTool
from relaybot.bus.events import OutboundMessage


async def test_send_to_current_route() -> None:
    sent: list[OutboundMessage] = []

    async def capture(msg: OutboundMessage) -> None:
        sent.append(msg)

    tool = MessageTool(send_callback=capture)
    ctx = ToolContext(channel="discord", chat_id="c9")

    assert await tool.execute(context=ctx, content="完成") == "消息已发送到 discord:c9"
    assert await tool.execute(context=ctx, message="另一个", to="c10", silent=True) == "消息已发送到 discord:c10"
    assert sent[0].content == "完成"
    assert sent[1].metadata == {"silent": True}


async def test_send_errors() -> None:
    tool = MessageTool()
    ctx = ToolContext()
    assert await tool.execute(context=ctx) == "错误：需要 content/message"
    assert await tool.execute(context=ctx, action="react", content="x") == "错误：不支持的操作 'react'"
    assert await tool.execute(context=ctx, content="x") == "错误：未配置消息发送"
