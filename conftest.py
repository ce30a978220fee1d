"""
测试共用的假 WebSocket 和本地 TCP 服务器
"""

import asyncio
import socket
from typing import List, Union

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.protocol import State

_EOF = object()
_ABORT = object()


class FakeWebSocket:
    """
    假入站通道 - 模拟 websockets 的 ServerConnection

    feed() 模拟客户端发来的消息，sent 记录中继发出的所有帧。
    """

    def __init__(self, close_delay: float = 0):
        self.state = State.OPEN
        self.close_delay = close_delay
        self.remote_address = ('127.0.0.1', 50000)
        self.sent: List[Union[str, bytes]] = []
        self.close_calls = []
        self.closed = asyncio.Event()
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._outbox: asyncio.Queue = asyncio.Queue()

    def feed(self, message):
        self._incoming.put_nowait(message)

    def disconnect(self):
        """客户端正常关闭"""
        self._incoming.put_nowait(_EOF)

    def abort(self):
        """客户端异常断开"""
        self._incoming.put_nowait(_ABORT)

    def fail(self, error: BaseException):
        """接收时抛出任意异常"""
        self._incoming.put_nowait(error)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _EOF:
            self.state = State.CLOSED
            raise StopAsyncIteration
        if item is _ABORT:
            self.state = State.CLOSED
            raise ConnectionClosedError(None, None)
        if isinstance(item, BaseException):
            self.state = State.CLOSED
            raise item
        return item

    async def send(self, message):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)
        self._outbox.put_nowait(message)

    async def close(self, code=1000, reason=''):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.close_calls.append((code, reason))
        self.state = State.CLOSED
        self._incoming.put_nowait(_EOF)
        self.closed.set()

    async def next_sent(self, timeout: float = 2.0):
        return await asyncio.wait_for(self._outbox.get(), timeout=timeout)

    async def collect_binary(self, size: int, timeout: float = 2.0) -> bytes:
        """收集二进制帧直到累计 size 字节"""
        data = b''
        while len(data) < size:
            message = await self.next_sent(timeout)
            assert isinstance(message, bytes), f"期望二进制帧，收到 {message!r}"
            data += message
        return data


class TcpTestServer:
    """本地 TCP 服务器，可选回显，记录收到的字节"""

    def __init__(self, echo: bool = True):
        self.echo = echo
        self.received = bytearray()
        self.accepted = 0
        self.writers: List[asyncio.StreamWriter] = []
        self.client_eof = asyncio.Event()
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader, writer):
        self.accepted += 1
        self.writers.append(writer)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    self.client_eof.set()
                    break
                self.received += data
                if self.echo:
                    writer.write(data)
                    await writer.drain()
        except (ConnectionError, OSError):
            self.client_eof.set()
        finally:
            writer.close()

    async def wait_received(self, size: int, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.received) < size:
            if loop.time() > deadline:
                raise asyncio.TimeoutError(f"只收到 {len(self.received)}/{size} 字节")
            await asyncio.sleep(0.01)
        return bytes(self.received)

    def drop_clients(self):
        """关闭所有已接受的连接（中继看到出站流结束）"""
        for writer in self.writers:
            writer.close()

    async def stop(self):
        self.drop_clients()
        self.server.close()
        await self.server.wait_closed()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def slow_close_ws():
    """关闭握手需要 0.2 秒的假 WebSocket"""
    return FakeWebSocket(close_delay=0.2)


@pytest.fixture
async def echo_server():
    server = await TcpTestServer(echo=True).start()
    yield server
    await server.stop()


@pytest.fixture
async def sink_server():
    server = await TcpTestServer(echo=False).start()
    yield server
    await server.stop()


@pytest.fixture
def closed_port():
    """一个当前没有监听的本地端口"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
