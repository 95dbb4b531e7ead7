"""
文件名: config.py
功能: 配置管理器，负责加载和管理引擎配置
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from retention_engine.utils.exceptions import ConfigError

DEFAULT_CONFIG_PATH = "config/config.yaml"


class Config:
    """
    配置管理器类

    功能：
    - 从 YAML 文件加载配置
    - 支持环境变量占位符（${VAR}）
    - 支持点号访问（如 config.get("retention.vector_store.max_capacity")）
    - 自动加载 .env 文件

    属性:
        _config (Dict[str, Any]): 配置数据字典
        _config_path (Optional[Path]): 配置文件路径，内存配置时为 None
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """
        初始化配置管理器

        参数:
            config_path (str): 配置文件路径，默认为 config/config.yaml

        异常:
            ConfigError: 配置文件不存在或格式错误时抛出
        """
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = Path(config_path)

        # 加载 .env 文件中的环境变量
        load_dotenv()

        self._load_config()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        从字典构建配置（不读文件，常用于测试和嵌入式使用）

        参数:
            data: 配置数据

        返回:
            Config: 配置实例
        """
        config = cls.__new__(cls)
        config._config_path = None
        config._config = config._resolve_env_vars(data or {})
        return config

    def _load_config(self) -> None:
        """
        从 YAML 文件加载配置

        异常:
            ConfigError: 配置文件不存在或解析失败时抛出
        """
        if not self._config_path.exists():
            raise ConfigError(
                f"配置文件不存在: {self._config_path}",
                details={"config_path": str(self._config_path)}
            )

        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                f"配置文件格式错误: {str(e)}",
                details={"config_path": str(self._config_path), "error": str(e)}
            )
        except OSError as e:
            raise ConfigError(
                f"加载配置文件失败: {str(e)}",
                details={"config_path": str(self._config_path), "error": str(e)}
            )

        if not isinstance(raw_config, dict):
            raise ConfigError(
                "配置文件顶层必须是映射",
                details={"config_path": str(self._config_path)}
            )

        self._config = self._resolve_env_vars(raw_config)

    def _resolve_env_vars(self, data: Any) -> Any:
        """
        递归解析配置中的环境变量占位符

        支持格式: ${VAR_NAME}，环境变量不存在时保留原始占位符
        """
        if isinstance(data, dict):
            return {key: self._resolve_env_vars(value) for key, value in data.items()}

        if isinstance(data, list):
            return [self._resolve_env_vars(item) for item in data]

        if isinstance(data, str):
            pattern = r"\$\{([^}]+)\}"

            def replacer(match):
                var_value = os.getenv(match.group(1))
                if var_value is None:
                    return match.group(0)
                return var_value

            return re.sub(pattern, replacer, data)

        return data

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值，支持点号路径

        参数:
            key (str): 配置键，支持点号分隔的路径（如 "retention.cleanup.batch_size"）
            default: 默认值，当配置不存在时返回

        返回:
            配置值，如果不存在则返回 default

        示例:
            >>> config.get("retention.vector_store.dimension")
            384
            >>> config.get("nonexistent.key", "default_value")
            'default_value'
        """
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_required(self, key: str) -> Any:
        """
        获取必需的配置值，如果不存在则抛出异常

        异常:
            ConfigError: 配置不存在时抛出
        """
        value = self.get(key)
        if value is None:
            raise ConfigError(
                f"缺少必需配置: {key}",
                details={"key": key}
            )
        return value

    def set(self, key: str, value: Any) -> None:
        """
        设置配置值（运行时修改，不会写入文件）

        参数:
            key (str): 配置键，支持点号路径
            value: 配置值
        """
        keys = key.split(".")
        target = self._config

        for k in keys[:-1]:
            if k not in target or not isinstance(target[k], dict):
                target[k] = {}
            target = target[k]

        target[keys[-1]] = value

    def to_dict(self) -> Dict[str, Any]:
        """返回完整配置字典的副本"""
        return self._config.copy()

    def __repr__(self) -> str:
        if self._config_path is None:
            return "<Config from dict>"
        return f"<Config from {self._config_path}>"


def load_config(config_path: str = DEFAULT_CONFIG_PATH, required: bool = False) -> Config:
    """
    加载配置

    参数:
        config_path: 配置文件路径
        required: 为 True 时文件缺失会抛出 ConfigError，否则返回空配置

    返回:
        Config: 配置实例
    """
    if not required and not Path(config_path).exists():
        load_dotenv()
        return Config.from_dict({})
    return Config(config_path)
