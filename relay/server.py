"""
WebSocket 中继服务器模块 - 服务器生命周期管理

此模块包含 RelayServer 类，负责 HTTP 升级握手、请求过滤（非 WebSocket 请求、
路径、认证、并发上限）以及为每个接受的连接创建 RelaySession。

主要组件:
- RelayServer: 管理 websockets 服务器、活跃会话集合和资源监控

使用示例:
    >>> config = build_relay_config(load_config('config.yaml'))
    >>> server = RelayServer(config)
    >>> asyncio.run(server.start())
"""

import asyncio
import logging
from http import HTTPStatus
from typing import Dict, Optional, Set
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from auth import RelayAuth
from config import RelayConfig
from connection import OutboundConnector
from resource_monitor import ResourceMonitor

from .session import RelaySession

logger = logging.getLogger('ws-relay-server')

BANNER = "WebSocket Proxy Server\n"


def _header_tokens(request: Request, name: str) -> Set[str]:
    values = ','.join(request.headers.get_all(name))
    return {item.strip().lower() for item in values.split(',') if item.strip()}


class RelayServer:
    """
    WebSocket 中继服务器类

    工作流程:
    1. 根据配置创建出站连接器（回退地址列表只解析一次，所有会话共享）
    2. 启动 websockets 服务器
    3. 在升级前过滤请求
    4. 为每个接受的连接运行一个 RelaySession

    Attributes:
        config: RelayConfig，中继配置
        connector: OutboundConnector，共享的出站连接器
        auth: RelayAuth，未配置密钥时为 None
        sessions: 活跃会话集合
    """

    def __init__(self, config: RelayConfig, connector: Optional[OutboundConnector] = None):
        self.config = config
        self.connector = connector or OutboundConnector(
            config.fallbacks(),
            connect_timeout=config.connect_timeout,
        )
        self.auth = RelayAuth(config.auth_secret, config.auth_max_age) if config.auth_secret else None
        self.sessions: Set[RelaySession] = set()
        self.server: Optional[Server] = None
        self.total_sessions = 0
        self.failed_connects = 0
        self.rejected_requests = 0
        self._monitor_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # 升级前过滤
    # ------------------------------------------------------------------

    def _request_token(self, request: Request) -> Optional[str]:
        query = parse_qs(urlsplit(request.path).query)
        if query.get('token'):
            return query['token'][0]
        for value in request.headers.get_all('Authorization'):
            scheme, _, credentials = value.partition(' ')
            if scheme.lower() == 'bearer' and credentials.strip():
                return credentials.strip()
        return None

    def _reject(self, connection: ServerConnection, status: HTTPStatus, text: str) -> Response:
        self.rejected_requests += 1
        return connection.respond(status, text)

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """
        在 WebSocket 握手前检查请求

        Returns:
            Response: 拒绝或直接应答的 HTTP 响应
            None: 继续完成 WebSocket 握手
        """
        if 'websocket' not in _header_tokens(request, 'Upgrade'):
            return connection.respond(HTTPStatus.OK, BANNER)

        expected_path = self.config.path.rstrip('/')
        if expected_path and urlsplit(request.path).path.rstrip('/') != expected_path:
            logger.debug(f"路径不匹配: {request.path}")
            return self._reject(connection, HTTPStatus.NOT_FOUND, "Not Found\n")

        if self.auth is not None:
            token = self._request_token(request)
            valid, name = self.auth.verify_token(token) if token else (False, None)
            if not valid:
                logger.warning(f"来自 {connection.remote_address} 的认证失败")
                return self._reject(connection, HTTPStatus.UNAUTHORIZED, "Unauthorized\n")
            logger.debug(f"认证成功: {name}")

        if self.config.max_sessions and len(self.sessions) >= self.config.max_sessions:
            logger.warning(f"会话数已达上限 {self.config.max_sessions}，拒绝 {connection.remote_address}")
            return self._reject(connection, HTTPStatus.SERVICE_UNAVAILABLE, "Too many sessions\n")

        return None

    # ------------------------------------------------------------------
    # 会话处理
    # ------------------------------------------------------------------

    async def handle_client(self, websocket: ServerConnection):
        """每个接受的 WebSocket 连接调用一次"""
        session = RelaySession(
            websocket,
            self.connector,
            read_size=self.config.read_size,
            idle_timeout=self.config.idle_timeout,
        )
        self.sessions.add(session)
        self.total_sessions += 1
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
            if session.connect_failed:
                self.failed_connects += 1

    async def close_all(self):
        """关闭所有活跃会话"""
        sessions = list(self.sessions)
        if not sessions:
            return
        logger.info(f"关闭 {len(sessions)} 个活跃会话")
        await asyncio.gather(
            *(session.close("server shutdown") for session in sessions),
            return_exceptions=True,
        )

    def stats(self) -> Dict[str, int]:
        """返回服务器统计信息"""
        return {
            'active_sessions': len(self.sessions),
            'total_sessions': self.total_sessions,
            'failed_connects': self.failed_connects,
            'rejected_requests': self.rejected_requests,
        }

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def listen(self) -> Server:
        """启动监听并返回 websockets 服务器（不阻塞）"""
        self.server = await serve(
            self.handle_client,
            self.config.host,
            self.config.port,
            process_request=self.process_request,
            max_size=self.config.max_message_size,
        )
        addr = self.server.sockets[0].getsockname()
        logger.info(f"WebSocket 中继运行于 {addr[0]}:{addr[1]}")
        logger.info(f"回退地址: {', '.join(str(f) for f in self.connector.fallbacks) or '无'}")
        if self.auth is not None:
            logger.info("已启用升级请求认证")

        if self.config.monitor_interval > 0:
            monitor = ResourceMonitor(
                check_interval=self.config.monitor_interval,
                session_counter=lambda: len(self.sessions),
            )
            self._monitor_task = asyncio.create_task(monitor.monitor_loop())
        return self.server

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    async def shutdown(self):
        """停止监听、关闭所有会话并停止资源监控"""
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        await self.close_all()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

        stats = self.stats()
        logger.info(
            f"会话统计: 总数={stats['total_sessions']}, 连接失败={stats['failed_connects']}, "
            f"拒绝请求={stats['rejected_requests']}"
        )

    async def start(self):
        """启动服务器并一直运行，直到任务被取消"""
        await self.listen()
        try:
            await self.server.serve_forever()
        finally:
            await self.shutdown()
