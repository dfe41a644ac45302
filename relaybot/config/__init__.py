"""relaybot 的配置模块。"""

from relaybot.config.loader import get_config_path, load_config
from relaybot.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
