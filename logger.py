"""
WebSocket 中继 - 日志管理模块

版本: 1.0.0

所有模块使用标准 logging 的命名记录器（ws-relay-session、ws-relay-connection 等），
本模块只负责在进程启动时配置根记录器：

- 控制台输出（终端下彩色）
- 可选的文件输出，按大小或按天轮转
- 可选的 systemd journal 输出（需要 systemd-python）
- 每条记录附带当前会话的 session_id 和 peer

会话上下文保存在 contextvars 中。每个会话运行在自己的 asyncio 任务里，
add_context() 只影响当前任务及其之后创建的子任务。

配置来源: config.yaml 的 logging 段，LOG_LEVEL、LOG_ENABLE_FILE 等环境变量优先。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

# 每个 asyncio 任务复制一份上下文，会话之间互不干扰
_log_context: contextvars.ContextVar = contextvars.ContextVar('ws_relay_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置，字段与 config.yaml 的 logging 段一一对应

    rotation_type 为 size 时按 max_bytes 轮转，date 时每天零点轮转，
    none 时写入单个文件。context_fields 决定每条日志的 [..] 部分显示哪些会话字段。
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "ws-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["session_id", "peer"]


def _env_bool(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).strip().lower() == 'true'


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息（context 字段）
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        data = _log_context.get()
        context_parts = []
        for name in self.context_fields:
            value = data.get(name, "-")
            context_parts.append(f"{name}={value}")

        record.context = " | ".join(context_parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出和结构化格式
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方处理器）也要有 context 字段
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config(self, log_conf: Optional[Dict[str, Any]] = None) -> LogConfig:
        """
        从配置文件的 logging 段和环境变量构建日志配置

        环境变量优先于配置文件。

        Args:
            log_conf: 配置文件中的 logging 段

        Returns:
            LogConfig: 日志配置对象
        """
        log_conf = log_conf or {}
        defaults = LogConfig()
        return LogConfig(
            level=os.getenv('LOG_LEVEL', log_conf.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', log_conf.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', log_conf.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_conf.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_conf.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_conf.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', log_conf.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', log_conf.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', log_conf.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', log_conf.get('enable_journal', defaults.enable_journal)),
            context_fields=log_conf.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None, log_conf: Optional[Dict[str, Any]] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            log_conf: 配置文件中的 logging 段（可选）
        """
        self.config = config or self.load_config(log_conf)
        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        if self.config.enable_console:
            self._add_handler(root_logger, logging.StreamHandler(sys.stdout), sys.stdout.isatty())

        if self.config.enable_file:
            self._add_handler(root_logger, self._create_file_handler(), False)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler(), False)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, use_color: bool):
        # 过滤器挂在处理器上，子记录器传播上来的记录也会经过它
        handler.setLevel(self._level())
        handler.addFilter(self.context_filter)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=use_color
        ))
        logger.addHandler(handler)

    def _create_file_handler(self) -> logging.Handler:
        """创建文件处理器（支持轮转）"""
        log_file_path = Path(self.config.log_dir) / self.config.log_file

        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')


def get_logger(name: str) -> logging.Logger:
    """获取日志记录器（便捷函数）"""
    return logging.getLogger(name)


def add_context(**kwargs):
    """
    为当前任务添加上下文信息

    新建的 asyncio 任务会继承创建时的上下文，因此在会话任务中调用后，
    会话派生的中继泵任务也带有相同的上下文。
    """
    data = dict(_log_context.get())
    data.update(kwargs)
    _log_context.set(data)


def clear_context():
    """清除当前任务的上下文信息"""
    _log_context.set({})


def get_context() -> Dict[str, Any]:
    """返回当前任务的上下文信息副本"""
    return dict(_log_context.get())
