"""配置加载实用工具。"""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.config.schema import Config

# 这些字段的值是原样透传的字典（例如 HTTP 头），键名不做转换
_OPAQUE_KEYS = {"extraHeaders", "extra_headers"}


def get_config_path() -> Path:
    """获取默认配置文件路径。"""
    return Path.home() / ".relaybot" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    从文件加载配置；文件不存在或无效时返回默认配置。
    
    参数：
        config_path：配置文件的可选路径。
    
    返回：
        已加载的配置对象。
    """
    path = config_path or get_config_path()
    
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config(**convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"无法从 {path} 加载配置：{e}，使用默认配置")
    
    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """以 camelCase 键将配置保存到文件。"""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def convert_keys(data: Any) -> Any:
    """递归地将 camelCase 键转换为 snake_case。"""
    if isinstance(data, dict):
        return {camel_to_snake(k): v if k in _OPAQUE_KEYS else convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """递归地将 snake_case 键转换为 camelCase。"""
    if isinstance(data, dict):
        return {snake_to_camel(k): v if k in _OPAQUE_KEYS else convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() and i > 0 else c.lower() for i, c in enumerate(name))


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
