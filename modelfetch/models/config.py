"""
配置模型

定义运行配置的数据类，从字典（TOML / JSON / YAML 解析结果）构建并校验。
"""

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from modelfetch.exceptions import ConfigValidationError

DEFAULT_USER_AGENT = "modelfetch/0.1.0"
DEFAULT_BASE_URL = "https://blob.handy.computer"


def get_default_resource_dir() -> Path:
    """
    获取默认资源目录

    优先使用环境变量 ``MODELFETCH_HOME``，否则使用平台缓存目录。
    """
    override = os.environ.get("MODELFETCH_HOME")
    if override:
        return Path(override)

    if platform.system() == "Darwin":
        return Path.home() / "Library" / "Caches" / "modelfetch"
    if platform.system() == "Windows":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "modelfetch"
        return Path.home() / ".cache" / "modelfetch"

    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache:
        return Path(xdg_cache) / "modelfetch"
    return Path.home() / ".cache" / "modelfetch"


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigValidationError(
            f"配置项 [{key}] 必须是表/对象", context={"section": key}
        )
    return value


def _positive(value: Any, name: str, allow_zero: bool = False) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(
            f"{name} 必须是数字", context={"field": name, "value": value}
        )
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigValidationError(
            f"{name} 必须为正数", context={"field": name, "value": value}
        )
    return value


@dataclass
class NetworkConfig:
    """网络配置"""

    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    user_agent: str = DEFAULT_USER_AGENT
    chunk_size: int = 64 * 1024
    max_retries: int = 2
    retry_delay: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        config = cls()
        if "connect_timeout" in data:
            config.connect_timeout = float(
                _positive(data["connect_timeout"], "network.connect_timeout")
            )
        if "read_timeout" in data:
            config.read_timeout = float(
                _positive(data["read_timeout"], "network.read_timeout")
            )
        if "user_agent" in data:
            config.user_agent = str(data["user_agent"])
        if "chunk_size" in data:
            config.chunk_size = int(_positive(data["chunk_size"], "network.chunk_size"))
        if "max_retries" in data:
            config.max_retries = int(
                _positive(data["max_retries"], "network.max_retries", allow_zero=True)
            )
        if "retry_delay" in data:
            config.retry_delay = float(
                _positive(data["retry_delay"], "network.retry_delay", allow_zero=True)
            )
        return config


@dataclass
class StorageConfig:
    """存储配置"""

    resource_dir: Optional[str] = None

    @property
    def root(self) -> Path:
        """资源根目录"""
        if self.resource_dir:
            return Path(self.resource_dir).expanduser()
        return get_default_resource_dir()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageConfig":
        resource_dir = data.get("resource_dir")
        if resource_dir is not None and not isinstance(resource_dir, str):
            raise ConfigValidationError(
                "storage.resource_dir 必须是字符串",
                context={"field": "storage.resource_dir", "value": resource_dir},
            )
        return cls(resource_dir=resource_dir)


@dataclass
class ModelFetchConfig:
    """
    ModelFetch 运行配置

    ``manifest`` 可以是清单文件路径，也可以直接是解析好的清单对象。
    """

    manifest: Optional[Union[str, Dict[str, Any]]] = None
    base_url: str = DEFAULT_BASE_URL
    max_concurrent: int = 2
    keep_partial_on_cancel: bool = True
    progress_step: float = 1.0
    log_level: Optional[str] = None
    log_file: Optional[str] = None
    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelFetchConfig":
        """
        从字典创建配置

        Args:
            data: 配置字典

        Returns:
            ModelFetchConfig 实例

        Raises:
            ConfigValidationError: 配置无效
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigValidationError("配置根节点必须是表/对象")

        general = _section(data, "modelfetch")
        config = cls(
            network=NetworkConfig.from_dict(_section(data, "network")),
            storage=StorageConfig.from_dict(_section(data, "storage")),
        )

        manifest = general.get("manifest", data.get("manifest"))
        if manifest is not None and not isinstance(manifest, (str, dict)):
            raise ConfigValidationError(
                "manifest 必须是路径或对象", context={"field": "manifest"}
            )
        config.manifest = manifest

        if "base_url" in general:
            base_url = general["base_url"]
            if not isinstance(base_url, str) or not base_url.startswith(
                ("http://", "https://")
            ):
                raise ConfigValidationError(
                    "base_url 必须是 http(s) 地址",
                    context={"field": "base_url", "value": base_url},
                )
            config.base_url = base_url.rstrip("/")

        if "max_concurrent" in general:
            max_concurrent = general["max_concurrent"]
            if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent < 1:
                raise ConfigValidationError(
                    "max_concurrent 必须是不小于 1 的整数",
                    context={"field": "max_concurrent", "value": max_concurrent},
                )
            config.max_concurrent = max_concurrent

        if "keep_partial_on_cancel" in general:
            config.keep_partial_on_cancel = bool(general["keep_partial_on_cancel"])

        if "progress_step" in general:
            step = float(_positive(general["progress_step"], "progress_step"))
            if step > 100:
                raise ConfigValidationError(
                    "progress_step 不能超过 100",
                    context={"field": "progress_step", "value": step},
                )
            config.progress_step = step

        if "log_level" in general:
            level = str(general["log_level"]).upper()
            if level not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
                raise ConfigValidationError(
                    f"无效的日志级别: {level}",
                    context={"field": "log_level", "value": level},
                )
            config.log_level = level

        if "log_file" in general:
            log_file = general["log_file"]
            if not isinstance(log_file, str) or not log_file:
                raise ConfigValidationError(
                    "log_file 必须是非空路径",
                    context={"field": "log_file", "value": log_file},
                )
            config.log_file = log_file

        return config
