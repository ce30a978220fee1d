#!/usr/bin/env python3
"""
中继会话测试

使用假 WebSocket 和本地 TCP 服务器驱动 RelaySession。

测试内容:
1. CONNECT + DATA 回显（文本帧和二进制帧）
2. 首段负载在 CONNECTED 之前写入出站连接
3. 出站流结束时恰好发送一次 CLOSE 再关闭
4. 多条 DATA 帧按顺序写入
5. 无效 CONNECT、重复 CONNECT、未连接时的 DATA
6. 连接失败、客户端断开、CLOSE 帧、空闲超时
7. 连接期间客户端断开时取消连接，首段负载不会写出
8. 接收任务异常被记录并结束会话
9. close() 幂等，并发调用等待第一次清理完成

使用方法:
    python3 -m pytest test_session.py
"""

import asyncio
import logging

import pytest
from websockets.protocol import State

from address import FallbackAddress
from connection import OutboundConnector
from relay.session import RelaySession, SessionState


def route_to(port, calls=None):
    """所有目标都连到本地 port 的连接器"""
    async def open_connection(host, target_port):
        if calls is not None:
            calls.append((host, target_port))
        return await asyncio.open_connection('127.0.0.1', port)
    return OutboundConnector(open_connection=open_connection, connect_timeout=2)


async def start_session(websocket, connector, idle_timeout=5.0):
    session = RelaySession(websocket, connector, idle_timeout=idle_timeout, session_id='test')
    task = asyncio.create_task(session.run())
    return session, task


async def finish(session, task):
    await session.close("test finished")
    await asyncio.wait_for(task, timeout=2)


async def connect(websocket, target='example.com:443', payload=''):
    websocket.feed(f'CONNECT:{target}|{payload}')
    reply = await websocket.next_sent()
    assert reply == 'CONNECTED'


async def test_connect_and_echo(fake_ws, echo_server):
    calls = []
    session, task = await start_session(fake_ws, route_to(echo_server.port, calls))

    await connect(fake_ws)
    assert calls == [('example.com', 443)]
    assert session.state is SessionState.RELAYING

    fake_ws.feed('DATA:hello')
    assert await fake_ws.collect_binary(5) == b'hello'

    fake_ws.feed(b'\x00\x01\xff')
    assert await fake_ws.collect_binary(3) == b'\x00\x01\xff'

    await finish(session, task)
    assert session.bytes_up == 8
    assert session.bytes_down == 8


async def test_data_text_frame_truncates_code_points(fake_ws, echo_server):
    session, task = await start_session(fake_ws, route_to(echo_server.port))
    await connect(fake_ws)

    fake_ws.feed('DATA:hŁ')
    assert await fake_ws.collect_binary(2) == b'hA'

    # 代理对的两个码元各占一个字节
    fake_ws.feed('DATA:\U0001F600')
    assert await fake_ws.collect_binary(2) == b'=\x00'
    await finish(session, task)


async def test_first_payload_written_before_connected(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))

    await connect(fake_ws, payload='GET / HTTP/1.1\r\n\r\n')

    assert await sink_server.wait_received(18) == b'GET / HTTP/1.1\r\n\r\n'
    assert session.bytes_up == 18
    await finish(session, task)


async def test_outbound_eof_sends_single_close(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))
    await connect(fake_ws)

    sink_server.drop_clients()

    await asyncio.wait_for(task, timeout=2)
    assert fake_ws.sent.count('CLOSE') == 1
    assert fake_ws.sent[-1] == 'CLOSE'
    assert fake_ws.close_calls == [(1000, 'Server closed')]
    assert session.closed
    assert session.outbound.is_closing()

    # 再次关闭不会重复执行清理
    await session.close("again")
    await session.wait_closed()
    assert fake_ws.close_calls == [(1000, 'Server closed')]
    assert fake_ws.sent.count('CLOSE') == 1


async def test_data_frames_written_in_order(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))
    await connect(fake_ws)

    chunks = [b'a' * 200000, b'b' * 100000, b'c' * 300000, b'd']
    fake_ws.feed('DATA:' + chunks[0].decode('latin-1'))
    fake_ws.feed(chunks[1])
    fake_ws.feed('DATA:' + chunks[2].decode('latin-1'))
    fake_ws.feed(chunks[3])

    expected = b''.join(chunks)
    assert await sink_server.wait_received(len(expected), timeout=5) == expected
    await finish(session, task)


async def test_connect_without_delimiter_keeps_session_idle(fake_ws):
    calls = []
    session, task = await start_session(fake_ws, route_to(1, calls))

    fake_ws.feed('CONNECT:example.com:443')
    reply = await fake_ws.next_sent()

    assert reply.startswith('ERROR:')
    assert calls == []
    assert session.outbound is None
    assert session.state is SessionState.IDLE
    await finish(session, task)


@pytest.mark.parametrize('target', ['example.com', 'example.com:http', 'example.com:70000', ':443'])
async def test_connect_with_bad_address(fake_ws, target):
    calls = []
    session, task = await start_session(fake_ws, route_to(1, calls))

    fake_ws.feed(f'CONNECT:{target}|')
    reply = await fake_ws.next_sent()

    assert reply.startswith('ERROR:Invalid address')
    assert calls == []
    assert session.state is SessionState.IDLE
    await finish(session, task)


async def test_unknown_frame_reports_error(fake_ws):
    session, task = await start_session(fake_ws, route_to(1))

    fake_ws.feed('HELLO')
    assert (await fake_ws.next_sent()).startswith('ERROR:')
    assert not session.closed
    await finish(session, task)


async def test_data_before_connect(fake_ws):
    session, task = await start_session(fake_ws, route_to(1))

    fake_ws.feed('DATA:early')
    assert await fake_ws.next_sent() == 'ERROR:not connected'
    assert session.outbound is None
    await finish(session, task)


async def test_second_connect_rejected(fake_ws, echo_server):
    calls = []
    session, task = await start_session(fake_ws, route_to(echo_server.port, calls))
    await connect(fake_ws)
    first = session.outbound

    fake_ws.feed('CONNECT:other.example.com:80|')
    assert await fake_ws.next_sent() == 'ERROR:already connected'
    assert session.outbound is first
    assert len(calls) == 1

    # 原连接仍然可用
    fake_ws.feed(b'still here')
    assert await fake_ws.collect_binary(10) == b'still here'
    await finish(session, task)


async def test_connect_failure_sends_error_and_closes(fake_ws, closed_port):
    connector = OutboundConnector(connect_timeout=2)
    session, task = await start_session(fake_ws, connector)

    fake_ws.feed(f'CONNECT:127.0.0.1:{closed_port}|hello')

    await asyncio.wait_for(task, timeout=5)
    errors = [m for m in fake_ws.sent if isinstance(m, str) and m.startswith('ERROR:')]
    assert len(errors) == 1
    assert f'127.0.0.1:{closed_port}' in errors[0]
    assert 'CONNECTED' not in fake_ws.sent
    assert session.connect_failed
    assert session.outbound is None
    assert fake_ws.close_calls == [(1000, 'Server closed')]


async def test_connect_failure_via_fallback_succeeds(fake_ws, echo_server, closed_port):
    connector = OutboundConnector([FallbackAddress('127.0.0.1', echo_server.port)], connect_timeout=2)
    session, task = await start_session(fake_ws, connector)

    await connect(fake_ws, target=f'127.0.0.1:{closed_port}', payload='hi')

    assert session.outbound.via_fallback
    assert await fake_ws.collect_binary(2) == b'hi'
    await finish(session, task)


async def test_client_close_frame(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))
    await connect(fake_ws)

    fake_ws.feed('CLOSE')

    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    assert session.outbound.is_closing()
    await asyncio.wait_for(sink_server.client_eof.wait(), timeout=2)


async def test_client_disconnect_closes_outbound(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))
    await connect(fake_ws)

    fake_ws.disconnect()

    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    assert session.outbound.is_closing()
    # 入站已关闭，不再尝试关闭 WebSocket
    assert fake_ws.close_calls == []
    await asyncio.wait_for(sink_server.client_eof.wait(), timeout=2)


async def test_client_abort_ends_session(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port))
    await connect(fake_ws)

    fake_ws.abort()

    # run() 不向调用者抛出异常
    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    assert fake_ws.state is State.CLOSED


async def test_idle_timeout_before_connect(fake_ws):
    session, task = await start_session(fake_ws, route_to(1), idle_timeout=0.1)

    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    assert fake_ws.close_calls == [(1000, 'Server closed')]


async def test_idle_timeout_while_relaying(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port), idle_timeout=0.2)
    await connect(fake_ws)

    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    assert 'CLOSE' not in fake_ws.sent
    await asyncio.wait_for(sink_server.client_eof.wait(), timeout=2)


async def test_upstream_activity_resets_idle_timer(fake_ws, sink_server):
    session, task = await start_session(fake_ws, route_to(sink_server.port), idle_timeout=0.3)
    await connect(fake_ws)

    # 只有上行数据，持续时间超过空闲超时
    for _ in range(5):
        fake_ws.feed(b'x')
        await asyncio.sleep(0.1)

    assert not session.closed
    await finish(session, task)


async def test_concurrent_close_runs_cleanup_once(fake_ws, echo_server):
    session, task = await start_session(fake_ws, route_to(echo_server.port))
    await connect(fake_ws)

    await asyncio.gather(*(session.close(f"closer {i}") for i in range(5)))
    await asyncio.wait_for(task, timeout=2)

    assert fake_ws.close_calls == [(1000, 'Server closed')]
    assert session.state is SessionState.CLOSED


@pytest.mark.parametrize('leave', ['abort', 'disconnect'])
async def test_client_leaves_while_connecting(fake_ws, sink_server, leave):
    attempts = []

    async def slow_open(host, port):
        attempts.append((host, port))
        await asyncio.sleep(0.5)
        return await asyncio.open_connection('127.0.0.1', sink_server.port)

    connector = OutboundConnector(open_connection=slow_open, connect_timeout=2)
    session, task = await start_session(fake_ws, connector)

    fake_ws.feed('CONNECT:example.com:80|SECRET')
    await asyncio.sleep(0.05)
    assert session.state is SessionState.CONNECTING
    getattr(fake_ws, leave)()

    # 会话立即结束，不等待进行中的连接
    await asyncio.wait_for(task, timeout=0.3)
    assert session.closed
    assert attempts == [('example.com', 80)]

    await asyncio.sleep(0.6)
    assert sink_server.accepted == 0
    assert sink_server.received == b''
    assert session.outbound is None
    assert 'CONNECTED' not in fake_ws.sent


async def test_queued_connect_dropped_after_client_left(fake_ws, sink_server):
    calls = []
    session, task = await start_session(fake_ws, route_to(sink_server.port, calls))

    fake_ws.feed('CONNECT:example.com:80|SECRET')
    fake_ws.disconnect()

    await asyncio.wait_for(task, timeout=2)
    assert calls == []
    assert sink_server.accepted == 0
    assert session.outbound is None


async def test_receiver_failure_is_logged_and_ends_session(fake_ws, caplog):
    caplog.set_level(logging.ERROR, logger='ws-relay-session')
    session, task = await start_session(fake_ws, route_to(1))

    fake_ws.fail(RuntimeError('boom'))

    await asyncio.wait_for(task, timeout=2)
    assert session.closed
    receiver = session._receiver_task
    assert receiver.done()
    assert receiver.exception() is None
    assert '接收任务错误: boom' in caplog.text


async def test_close_waits_for_receiver(fake_ws):
    session, task = await start_session(fake_ws, route_to(1))
    await asyncio.sleep(0)

    await session.close("test finished")

    assert session._receiver_task.done()
    await asyncio.wait_for(task, timeout=2)


async def test_second_close_waits_for_cleanup(slow_close_ws):
    websocket = slow_close_ws
    session, task = await start_session(websocket, route_to(1))
    await asyncio.sleep(0)

    first = asyncio.create_task(session.close("first"))
    await asyncio.sleep(0)
    assert session.closed

    # 第一次清理仍在关闭 WebSocket 时，第二次调用不能提前返回
    await session.close("second")
    assert websocket.close_calls == [(1000, 'Server closed')]
    assert session._closed_event.is_set()

    await first
    await asyncio.wait_for(task, timeout=2)
    assert websocket.close_calls == [(1000, 'Server closed')]


if __name__ == '__main__':
    raise SystemExit(pytest.main([__file__, '-v']))
