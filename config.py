"""
WebSocket 中继 - 配置管理模块
加载 YAML 配置文件，合并环境变量，构建中继配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 中继服务配置数据类
2. YAML 配置文件的加载和保存
3. RELAY_ 前缀环境变量覆盖
4. 回退地址列表解析和配置校验

配置文件格式（config.yaml）:
    relay:
      host: 0.0.0.0
      port: 8080
      fallback_addresses:
        - 210.61.97.241:81
      connect_timeout: 10
      idle_timeout: 300
    logging:
      level: INFO
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml

from address import FallbackAddress, parse_fallback_address
from errors import ConfigError, MalformedAddress

logger = logging.getLogger(__name__)

ENV_PREFIX = 'RELAY_'

DEFAULT_FALLBACK_ADDRESSES = ['210.61.97.241:81']


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class RelayConfig:
    """
    中继配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 8080）
        path: 接受 WebSocket 升级的路径，"/" 或空表示任意路径
        fallback_addresses: 回退地址字符串列表，按顺序尝试
        connect_timeout: 每次连接尝试的超时（秒），0 表示不限制
        idle_timeout: 会话空闲超时（秒），0 表示不限制
        read_size: 每次从出站连接读取的最大字节数
        max_message_size: 入站 WebSocket 消息的最大字节数
        max_sessions: 最大并发会话数，0 表示不限制
        auth_secret: 升级请求令牌的共享密钥，空表示不认证
        auth_max_age: 令牌有效期（秒）
        monitor_interval: 资源监控间隔（秒），0 表示关闭
    """
    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/"
    fallback_addresses: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_ADDRESSES))
    connect_timeout: float = 10.0
    idle_timeout: float = 300.0
    read_size: int = 65536
    max_message_size: int = 1024 * 1024
    max_sessions: int = 0
    auth_secret: str = ""
    auth_max_age: int = 300
    monitor_interval: float = 0.0

    def fallbacks(self) -> Tuple[FallbackAddress, ...]:
        """解析回退地址列表"""
        parsed = []
        for entry in self.fallback_addresses:
            try:
                parsed.append(parse_fallback_address(str(entry)))
            except MalformedAddress as e:
                raise ConfigError(f"无效的回退地址 {entry!r}: {e.reason}") from e
        return tuple(parsed)

    def validate(self):
        """
        校验配置

        Raises:
            ConfigError: 端口越界、超时为负数、读取大小无效或回退地址无法解析
        """
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"监听端口越界: {self.port}")
        if self.connect_timeout < 0 or self.idle_timeout < 0:
            raise ConfigError("超时时间不能为负数")
        if self.read_size <= 0:
            raise ConfigError(f"读取大小必须为正数: {self.read_size}")
        if self.max_message_size <= 0:
            raise ConfigError(f"消息大小上限必须为正数: {self.max_message_size}")
        if self.max_sessions < 0:
            raise ConfigError(f"最大会话数不能为负数: {self.max_sessions}")
        self.fallbacks()


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def _coerce(name: str, value: Any, default: Any) -> Any:
    """将配置值转换为默认值的类型"""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)
    if isinstance(default, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        if value is None:
            return []
        if not isinstance(value, list):
            raise ConfigError(f"配置项 {name} 必须是列表")
        return [str(item) for item in value]
    try:
        return type(default)(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"配置项 {name} 的值无效: {value!r}") from e


def build_relay_config(config_data: Optional[Dict[str, Any]] = None,
                       environ: Optional[Dict[str, str]] = None) -> RelayConfig:
    """
    从配置字典和环境变量构建中继配置

    优先级: 环境变量（RELAY_PORT 等）> 配置文件 relay 段 > 默认值

    Args:
        config_data: load_config 返回的字典
        environ: 环境变量字典，默认使用 os.environ

    Returns:
        RelayConfig: 已校验的配置

    Raises:
        ConfigError: 配置值无效
    """
    config_data = config_data or {}
    environ = os.environ if environ is None else environ
    relay_conf = config_data.get('relay') or {}
    if not isinstance(relay_conf, dict):
        raise ConfigError("relay 配置段必须是字典")

    defaults = RelayConfig()
    values = {}
    for f in fields(RelayConfig):
        default = getattr(defaults, f.name)
        env_key = ENV_PREFIX + f.name.upper()
        if env_key in environ:
            values[f.name] = _coerce(f.name, environ[env_key], default)
        elif f.name in relay_conf:
            values[f.name] = _coerce(f.name, relay_conf[f.name], default)

    config = RelayConfig(**values)
    config.validate()
    return config
