"""
  连接管理模块 - 出站通道和回退连接策略

  本模块负责为中继会话建立到目标主机的 TCP 连接。

  主要功能:
  - 出站通道数据类（读写两端分离）
  - 按顺序尝试直连和回退地址的连接器
  - 连接尝试记录

  连接策略（按优先级）:
  1. 直连目标地址
  2. 按配置顺序依次尝试回退地址（端口未配置时沿用目标端口）

  第一个成功的连接立即返回，后续地址不再尝试。
  所有尝试都失败时抛出 ConnectFailed，携带最后一个底层错误。

  版本:1.0.0
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from address import FallbackAddress, TargetAddress
from errors import ConnectFailed, ReadFailed, WriteFailed

logger = logging.getLogger('ws-relay-connection')

DEFAULT_CONNECT_TIMEOUT = 10.0


# ============================================================================
# 出站通道 - 中继到目标主机的 TCP 连接
# ============================================================================

@dataclass
class OutboundChannel:
    """
    出站通道数据类 - 表示一个已建立的 TCP 连接

    reader 和 writer 是两个独立的句柄：中继泵只读 reader，
    入站消息处理只写 writer，两者可以并发使用。

    Attributes:
        host: 实际连接的主机（直连时为目标主机，回退时为回退主机）
        port: 实际连接的端口
        reader: asyncio.StreamReader，从目标主机读取数据
        writer: asyncio.StreamWriter，向目标主机写入数据
        via_fallback: 是否经由回退地址建立
    """
    host: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    via_fallback: bool = False

    async def read(self, size: int) -> bytes:
        """读取最多 size 字节，返回空字节表示流结束"""
        try:
            return await self.reader.read(size)
        except (ConnectionError, OSError) as e:
            raise ReadFailed(f"Read from {self.host}:{self.port} failed: {e}") from e

    async def write(self, data: bytes):
        """写入并等待缓冲区排空"""
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError, RuntimeError) as e:
            raise WriteFailed(f"Write to {self.host}:{self.port} failed: {e}") from e

    async def close(self):
        """关闭 TCP 连接，重复调用是安全的"""
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass  # 连接已断开

    def is_closing(self) -> bool:
        return self.writer.is_closing()


@dataclass
class ConnectionAttempt:
    """
    一次连接尝试的记录，仅在重试循环和 ConnectFailed 中使用

    Attributes:
        host: 尝试的主机
        port: 尝试的端口
        via_fallback: 是否为回退地址
        error: 失败时的异常，成功或尚未尝试时为 None
    """
    host: str
    port: int
    via_fallback: bool = False
    error: Optional[BaseException] = None

    @property
    def label(self) -> str:
        kind = "回退" if self.via_fallback else "直连"
        return f"{kind} {self.host}:{self.port}"


# ============================================================================
# 出站连接器
# ============================================================================

OpenConnection = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class OutboundConnector:
    """
    出站连接器 - 直连失败时按顺序尝试回退地址

    回退地址列表在构造时注入，运行期间不会修改，可以被所有会话共享。

    Attributes:
        fallbacks: 回退地址元组（顺序即优先级）
        connect_timeout: 每次尝试的超时时间（秒），0 或 None 表示只依赖系统超时
    """

    def __init__(
        self,
        fallbacks: Iterable[FallbackAddress] = (),
        connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT,
        open_connection: Optional[OpenConnection] = None,
    ):
        self.fallbacks: Tuple[FallbackAddress, ...] = tuple(fallbacks)
        self.connect_timeout = connect_timeout
        self._open_connection = open_connection or asyncio.open_connection

    def build_attempts(self, target: TargetAddress) -> List[ConnectionAttempt]:
        """
        构建有序的连接尝试列表：先直连，再按配置顺序尝试回退地址

        Example:
            >>> connector = OutboundConnector([FallbackAddress('10.0.0.1', 81), FallbackAddress('10.0.0.2')])
            >>> [a.label for a in connector.build_attempts(TargetAddress('example.com', 443))]
            ['直连 example.com:443', '回退 10.0.0.1:81', '回退 10.0.0.2:443']
        """
        attempts = [ConnectionAttempt(host=target.host, port=target.port)]
        for fallback in self.fallbacks:
            attempts.append(ConnectionAttempt(
                host=fallback.host,
                port=fallback.resolve_port(target.port),
                via_fallback=True,
            ))
        return attempts

    async def _open(self, attempt: ConnectionAttempt) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        coro = self._open_connection(attempt.host, attempt.port)
        if self.connect_timeout:
            return await asyncio.wait_for(coro, timeout=self.connect_timeout)
        return await coro

    async def connect(self, target: TargetAddress) -> OutboundChannel:
        """
        建立到目标的出站连接

        Args:
            target: 已解析的目标地址

        Returns:
            OutboundChannel: 第一个成功的连接

        Raises:
            ConnectFailed: 直连和所有回退地址都失败
        """
        attempts = self.build_attempts(target)
        tried: List[ConnectionAttempt] = []

        for attempt in attempts:
            tried.append(attempt)
            try:
                logger.debug(f"尝试连接: {attempt.label} (目标 {target})")
                # 超时或取消时 open_connection 会自行释放未完成的传输
                reader, writer = await self._open(attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt.error = e
                logger.debug(f"连接失败: {attempt.label}, 错误: {e!r}")
                continue

            logger.debug(f"连接成功: {attempt.label}")
            return OutboundChannel(
                host=attempt.host,
                port=attempt.port,
                reader=reader,
                writer=writer,
                via_fallback=attempt.via_fallback,
            )

        last_error = tried[-1].error if tried else None
        raise ConnectFailed(target, tried, last_error) from last_error
