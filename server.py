#!/usr/bin/env python3
"""
WebSocket 中继服务端

版本: 1.0.0

协议:
1. 客户端发起 WebSocket 升级（可选携带认证令牌）
2. 客户端发送 CONNECT:<host:port>|<首段负载>
3. 中继直连目标，失败时依次尝试回退地址
4. 双向转发字节，直到任一方关闭

功能:
- 回退地址重试
- 升级请求令牌认证（可选）
- 连接超时和会话空闲超时
- 进程资源监控（可选）
"""

import argparse
import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from config import RelayConfig, build_relay_config, load_config
from errors import ConfigError
from logger import LoggerManager
from relay import RelayServer

logger = logging.getLogger('ws-relay-server')


def resolve_config(config_data: Optional[Dict[str, Any]], host: Optional[str] = None,
                   port: Optional[int] = None, environ: Optional[Dict[str, str]] = None) -> RelayConfig:
    """
    构建启动配置

    优先级: 命令行参数 > 环境变量 > 配置文件 > 默认值

    Raises:
        ConfigError: 配置值无效
    """
    config = build_relay_config(config_data, environ)
    overrides = {}
    if host is not None:
        overrides['host'] = host
    if port is not None:
        overrides['port'] = port
    if overrides:
        config = replace(config, **overrides)
        config.validate()
    return config


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='WebSocket 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（覆盖配置文件和环境变量）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（覆盖配置文件和环境变量）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    # 加载配置文件
    config_data = load_config(args.config)

    LoggerManager().initialize(log_conf=config_data.get('logging'))
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        for handler in logging.getLogger().handlers:
            handler.setLevel(logging.DEBUG)

    try:
        config = resolve_config(config_data, host=args.host, port=args.port)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    server = RelayServer(config)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    exit(main())
