"""会话管理模块。"""

from relaybot.session.manager import Session, SessionManager

__all__ = ["Session", "SessionManager"]
