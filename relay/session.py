"""
中继会话模块

本模块定义了 RelaySession 类，负责单个 WebSocket 会话从接受到关闭的完整生命周期：
解析控制帧、建立出站 TCP 连接（含回退重试）、双向转发字节以及幂等的资源清理。

状态机:
    IDLE --CONNECT--> CONNECTING --成功--> RELAYING --出站结束/错误--> CLOSED
                          |                                            ^
                          +------------------失败--------------------->+
    任何状态 --入站关闭/错误、CLOSE 帧、空闲超时--> CLOSED
"""

import asyncio
import enum
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from address import TargetAddress, parse_address
from connection import OutboundChannel, OutboundConnector
from errors import ConnectFailed, MalformedAddress, MalformedFrame, ReadFailed, WriteFailed
from logger import add_context
from protocol import (
    MSG_CLOSE,
    MSG_CONNECTED,
    CloseFrame,
    ConnectFrame,
    DataFrame,
    make_error,
    parse_inbound,
)

logger = logging.getLogger('ws-relay-session')

DEFAULT_READ_SIZE = 65536
DEFAULT_IDLE_TIMEOUT = 300.0
INBOUND_QUEUE_SIZE = 64


class SessionState(enum.Enum):
    """会话状态"""
    IDLE = 'idle'
    CONNECTING = 'connecting'
    RELAYING = 'relaying'
    CLOSED = 'closed'


class EventKind(enum.Enum):
    """入站事件类型"""
    MESSAGE = 'message'
    CLOSED = 'closed'
    ERROR = 'error'


@dataclass
class InboundEvent:
    """
    入站事件 - 接收任务按到达顺序放入队列，由会话主循环逐个处理

    Attributes:
        kind: 事件类型
        data: MESSAGE 事件的消息内容（文本帧为 str，二进制帧为 bytes）
        error: CLOSED/ERROR 事件的原因
    """
    kind: EventKind
    data: Union[str, bytes, None] = None
    error: Optional[BaseException] = None


class RelaySession:
    """
    中继会话类 - 一个 WebSocket 连接及其至多一个出站 TCP 连接

    工作流程:
    1. 接收任务把入站消息按顺序放入事件队列
    2. 主循环逐个处理事件，每次出站写入都等待排空后才处理下一条
    3. CONNECT 成功后启动中继泵，把出站数据转发为二进制帧
    4. 任一方结束或出错时执行一次幂等的清理

    Attributes:
        websocket: 入站 WebSocket 连接（会话独占）
        connector: 出站连接器（回退地址列表只读共享）
        state: 当前会话状态
        outbound: 已建立的出站通道，未建立时为 None
        target: 当前 CONNECT 的目标地址
        session_id: 会话短标识，用于日志
    """

    def __init__(
        self,
        websocket,
        connector: OutboundConnector,
        read_size: int = DEFAULT_READ_SIZE,
        idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
        session_id: Optional[str] = None,
    ):
        """
        初始化中继会话

        Args:
            websocket: 已完成握手的 WebSocket 连接
            connector: 出站连接器
            read_size: 中继泵每次读取的最大字节数
            idle_timeout: 双向都没有数据时的空闲超时（秒），0 或 None 表示不限制
            session_id: 会话标识，默认随机生成
        """
        self.websocket = websocket
        self.connector = connector
        self.read_size = read_size
        self.idle_timeout = idle_timeout
        self.session_id = session_id or secrets.token_hex(4)

        self.state = SessionState.IDLE
        self.outbound: Optional[OutboundChannel] = None
        self.target: Optional[TargetAddress] = None
        self.connect_failed = False

        self.events: asyncio.Queue = asyncio.Queue(maxsize=INBOUND_QUEUE_SIZE)
        self._receiver_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._closing_task: Optional[asyncio.Task] = None
        self._closed_event = asyncio.Event()
        self._last_activity = asyncio.get_running_loop().time()

        self.bytes_up = 0     # 入站 -> 出站
        self.bytes_down = 0   # 出站 -> 入站

        peer = getattr(websocket, 'remote_address', None)
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    async def wait_closed(self):
        """等待会话清理完成"""
        await self._closed_event.wait()

    # ------------------------------------------------------------------
    # 主循环
    # ------------------------------------------------------------------

    async def run(self):
        """
        会话入口 - 每个接受的 WebSocket 连接调用一次

        此方法在会话关闭后返回，不会向调用者抛出会话内部的错误（取消除外）。
        """
        add_context(session_id=self.session_id, peer=self.peer)
        logger.info(f"会话开始: {self.peer}")

        self._receiver_task = asyncio.create_task(self._receive_loop())
        try:
            await self._consume()
        except asyncio.CancelledError:
            logger.debug("会话被取消")
            raise
        except Exception as e:
            logger.error(f"会话错误: {e}", exc_info=True)
        finally:
            await self.close("session ended")
            logger.info(
                f"会话结束: {self.peer}, 上行={self.bytes_up} 字节, 下行={self.bytes_down} 字节"
            )

    async def _receive_loop(self):
        """
        接收任务 - 把入站消息按到达顺序放入事件队列

        入站结束时通常排入一个关闭事件，让之前的消息先处理完；
        主循环正在等待出站连接时则直接关闭会话，取消进行中的连接。
        """
        event = InboundEvent(EventKind.CLOSED)
        try:
            async for message in self.websocket:
                await self.events.put(InboundEvent(EventKind.MESSAGE, message))
        except ConnectionClosed as e:
            # 对端异常断开是正常的关闭信号
            event = InboundEvent(EventKind.CLOSED, error=e)
        except (ConnectionError, OSError) as e:
            event = InboundEvent(EventKind.ERROR, error=e)
        except Exception as e:
            logger.error(f"接收任务错误: {e}", exc_info=True)
            event = InboundEvent(EventKind.ERROR, error=e)

        if self.state is SessionState.CONNECTING:
            logger.debug(f"连接期间入站通道已关闭: {event.error!r}")
            await self.close("inbound closed while connecting")
            return
        await self.events.put(event)

    async def _next_event(self) -> Optional[InboundEvent]:
        # 只有 IDLE 状态由主循环计算空闲超时，RELAYING 状态由中继泵负责
        if self.state is SessionState.IDLE and self.idle_timeout:
            try:
                return await asyncio.wait_for(self.events.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                return None
        return await self.events.get()

    async def _consume(self):
        while not self.closed:
            event = await self._next_event()
            if event is None:
                logger.info(f"空闲超时（{self.idle_timeout}秒内未收到 CONNECT）")
                await self.close("idle timeout")
                break
            if self.closed:
                break

            if event.kind is EventKind.MESSAGE:
                self._touch()
                await self.handle_message(event.data)
            elif event.kind is EventKind.ERROR:
                logger.debug(f"入站通道错误: {event.error!r}")
                await self.close("inbound error")
            else:
                logger.debug(f"入站通道已关闭: {event.error!r}")
                await self.close("inbound closed")

    # ------------------------------------------------------------------
    # 入站消息处理
    # ------------------------------------------------------------------

    async def handle_message(self, message: Union[str, bytes]):
        """
        处理一条入站消息

        Args:
            message: 文本帧（str）或二进制帧（bytes）
        """
        try:
            frame = parse_inbound(message)
        except MalformedFrame as e:
            logger.warning(f"无效的控制帧: {e}")
            await self._send_error(str(e))
            return

        if isinstance(frame, ConnectFrame):
            await self._handle_connect(frame)
        elif isinstance(frame, DataFrame):
            await self._handle_data(frame.payload)
        elif isinstance(frame, CloseFrame):
            logger.debug("收到 CLOSE 帧")
            await self.close("client requested close")

    async def _handle_connect(self, frame: ConnectFrame):
        """
        处理 CONNECT 请求 - 建立出站连接并启动中继泵

        同一时刻只允许一个出站连接，已连接或正在连接时拒绝新的 CONNECT。
        """
        if self.state is not SessionState.IDLE:
            logger.warning(f"拒绝 CONNECT: 会话状态为 {self.state.value}")
            await self._send_error("already connected")
            return

        try:
            target = parse_address(frame.target)
        except MalformedAddress as e:
            logger.warning(f"无效的目标地址: {frame.target!r} ({e.reason})")
            await self._send_error(str(e))
            return

        if not self._inbound_open():
            # CONNECT 在队列中等待时客户端已经断开
            logger.debug(f"入站通道已关闭，放弃 CONNECT -> {target}")
            await self.close("inbound closed")
            return

        self.state = SessionState.CONNECTING
        self.target = target
        logger.info(f"CONNECT -> {target}")

        # 连接在独立任务中进行，入站关闭时 close() 可以取消它
        self._connect_task = asyncio.create_task(self.connector.connect(target))
        try:
            await asyncio.wait({self._connect_task})
        except asyncio.CancelledError:
            self._connect_task.cancel()
            raise
        if self._connect_task.cancelled():
            logger.debug(f"会话已关闭，取消 CONNECT -> {target}")
            return

        try:
            channel = self._connect_task.result()
        except ConnectFailed as e:
            self.connect_failed = True
            logger.warning(f"CONNECT_FAILED -> {target}: {e.last_error!r}")
            await self._send_error(str(e))
            await self.close("connect failed")
            return

        if self.closed:
            # 连接期间会话已被关闭，新连接无人持有
            await channel.close()
            return
        self.outbound = channel

        route = f"经由回退地址 {channel.host}:{channel.port}" if channel.via_fallback else "直连"
        logger.info(f"CONNECTED -> {target} ({route})")

        if frame.payload:
            try:
                await channel.write(frame.payload)
            except WriteFailed as e:
                logger.debug(f"首段负载写入失败: {e}")
                await self._send_error(str(e))
                await self.close("write failed")
                return
            self.bytes_up += len(frame.payload)

        await self._send(MSG_CONNECTED)
        self._start_pump()

    async def _handle_data(self, payload: bytes):
        """
        处理 DATA 帧或二进制帧 - 转发到出站连接

        写入完成（缓冲区排空）后才返回，保证入站帧的顺序。
        """
        if self.state is not SessionState.RELAYING or self.outbound is None:
            logger.debug(f"未连接，丢弃 {len(payload)} 字节")
            await self._send_error("not connected")
            return
        if not payload:
            return

        try:
            await self.outbound.write(payload)
        except WriteFailed as e:
            logger.debug(f"转发数据错误: {e}")
            await self._send_error(str(e))
            await self.close("write failed")
            return

        self.bytes_up += len(payload)
        self._touch()

    # ------------------------------------------------------------------
    # 中继泵
    # ------------------------------------------------------------------

    def _start_pump(self):
        # 只在 CONNECTING -> RELAYING 转换时启动一次
        if self.state is not SessionState.CONNECTING:
            return
        self.state = SessionState.RELAYING
        self._pump_task = asyncio.create_task(self._pump())

    async def _read_outbound(self, channel: OutboundChannel) -> Optional[bytes]:
        """读取出站数据，空闲超时返回 None"""
        if not self.idle_timeout:
            return await channel.read(self.read_size)

        loop = asyncio.get_running_loop()
        while True:
            remaining = self.idle_timeout - (loop.time() - self._last_activity)
            if remaining <= 0:
                return None
            try:
                return await asyncio.wait_for(channel.read(self.read_size), timeout=remaining)
            except asyncio.TimeoutError:
                # 期间可能有上行数据刷新了活动时间，重新计算
                continue

    async def _pump(self):
        """
        中继泵 - 从出站连接读取数据并以二进制帧发送给客户端

        出站流结束时先发送 CLOSE 再关闭会话；入站通道已关闭时直接停止。
        """
        channel = self.outbound
        reason = "pump stopped"
        try:
            while self.state is SessionState.RELAYING:
                data = await self._read_outbound(channel)
                if data is None:
                    logger.info(f"空闲超时（{self.idle_timeout}秒）")
                    reason = "idle timeout"
                    break
                if not data:
                    logger.debug("出站连接已关闭（读取到空数据）")
                    await self._send(MSG_CLOSE)
                    reason = "outbound closed"
                    break
                if not await self._send(data):
                    logger.debug("入站通道已关闭，停止中继泵")
                    reason = "inbound closed"
                    break
                self.bytes_down += len(data)
                self._touch()
        except asyncio.CancelledError:
            raise
        except ReadFailed as e:
            logger.debug(f"出站读取错误: {e}")
            reason = "read failed"
        except Exception as e:
            logger.error(f"中继泵错误: {e}", exc_info=True)
            reason = "pump error"

        await self.close(reason)

    # ------------------------------------------------------------------
    # 发送和清理
    # ------------------------------------------------------------------

    def _touch(self):
        self._last_activity = asyncio.get_running_loop().time()

    def _inbound_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def _send(self, message: Union[str, bytes]) -> bool:
        """
        向客户端发送一帧（尽力而为）

        Returns:
            bool: 发送成功返回 True，入站通道已关闭返回 False
        """
        if not self._inbound_open():
            return False
        try:
            await self.websocket.send(message)
            return True
        except ConnectionClosed as e:
            logger.debug(f"发送失败，入站通道已关闭: {e!r}")
            return False

    async def _send_error(self, message: str):
        await self._send(make_error(message))

    def _wake_consumer(self):
        # 队列已满时丢弃一条待处理消息，会话已关闭，剩余消息不再处理
        if self.events.full():
            self.events.get_nowait()
        self.events.put_nowait(InboundEvent(EventKind.CLOSED))

    async def close(self, reason: str = ""):
        """
        关闭会话并释放所有资源（幂等）

        第一次调用执行清理。之后的调用等待这次清理完成再返回，
        清理任务自身的重入调用直接返回。
        每个清理步骤独立执行，某一步失败不会影响后续步骤。

        Args:
            reason: 关闭原因，用于日志
        """
        current = asyncio.current_task()
        if self.state is SessionState.CLOSED:
            if current is not self._closing_task:
                await self._closed_event.wait()
            return
        self.state = SessionState.CLOSED
        self._closing_task = current
        logger.debug(f"关闭会话: {reason}")

        try:
            failures = []

            # 停止接收任务并唤醒主循环
            receiver = self._receiver_task
            if receiver is not None and receiver is not current:
                if not receiver.done():
                    receiver.cancel()
                await asyncio.wait({receiver})
                if not receiver.cancelled() and receiver.exception() is not None:
                    failures.append(("receiver", receiver.exception()))
            self._wake_consumer()

            # 取消进行中的出站连接，主循环看到取消后直接返回
            connecting = self._connect_task
            if connecting is not None and connecting is not current and not connecting.done():
                connecting.cancel()
                await asyncio.wait({connecting})

            # 停止中继泵（调用者是中继泵自身时跳过）
            pump = self._pump_task
            if pump is not None and pump is not current and not pump.done():
                pump.cancel()
                await asyncio.wait({pump})
                if not pump.cancelled() and pump.exception() is not None:
                    failures.append(("pump", pump.exception()))

            # 关闭出站连接
            if self.outbound is not None:
                try:
                    await self.outbound.close()
                except Exception as e:
                    failures.append(("outbound", e))

            # 关闭入站 WebSocket（仅在尚未关闭时）
            if self.websocket.state in (State.OPEN, State.CLOSING):
                try:
                    await self.websocket.close(1000, "Server closed")
                except Exception as e:
                    failures.append(("inbound", e))

            for step, error in failures:
                logger.debug(f"清理 {step} 时出错: {error!r}")
        finally:
            self._closed_event.set()
