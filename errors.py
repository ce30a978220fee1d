"""
WebSocket 中继 - 错误类型

会话内部产生的所有失败都以这些异常表达，由会话在本地处理并转换为
ERROR: 通知和/或会话关闭，不会传播到其他会话。
"""

from typing import List, Optional


class RelayError(Exception):
    """中继错误基类"""


class MalformedAddress(RelayError):
    """CONNECT 目标地址格式错误"""

    def __init__(self, text: str, reason: str):
        super().__init__(f"Invalid address {text!r}: {reason}")
        self.text = text
        self.reason = reason


class MalformedFrame(RelayError):
    """控制帧结构无效"""


class ConnectFailed(RelayError):
    """
    直连和所有回退地址都连接失败

    Attributes:
        target: 原始目标地址
        attempts: 按顺序记录的连接尝试（ConnectionAttempt 列表）
        last_error: 最后一次尝试的底层异常
    """

    def __init__(self, target, attempts: List, last_error: Optional[BaseException] = None):
        self.target = target
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"Connect to {target} failed after {len(attempts)} attempt(s){detail}"
        )


class WriteFailed(RelayError):
    """向出站或入站通道写入失败"""


class ReadFailed(RelayError):
    """从出站通道读取失败"""


class ConfigError(RelayError):
    """配置无效"""
