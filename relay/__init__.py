"""
WebSocket 中继模块

本包包含中继引擎的会话和服务器两部分：
- RelaySession: 单个 WebSocket 会话的状态机、中继泵和清理
- RelayServer: HTTP 升级、请求过滤和会话生命周期

使用示例：
    from relay import RelayServer
    server = RelayServer(config)
    await server.start()
"""


# 延迟导入，避免仅使用会话时加载服务器依赖
def __getattr__(name):
    if name in ('RelaySession', 'SessionState'):
        from . import session
        return getattr(session, name)
    if name == 'RelayServer':
        from .server import RelayServer
        return RelayServer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'RelaySession',
    'SessionState',
    'RelayServer',
]
