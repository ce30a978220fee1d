#!/usr/bin/env python3
"""
WebSocket 中继 - 升级请求认证模块

版本: 1.0.0

功能概述:
WebSocket 升级请求可以携带认证令牌（查询参数 token 或
Authorization: Bearer 头）。令牌使用 HMAC-SHA256 签名并带时间戳，
防止重放。

密钥派生:
- 使用 HKDF-SHA256 从共享密钥派生 32 字节 HMAC 密钥
- 盐值: b'ws-relay-v1'，信息: b'upgrade-token'

令牌格式:
    base64("<name>:<timestamp>:<base64(mac)>")
    mac = HMAC-SHA256(key, "ws-relay-auth:<name>:<timestamp>")

放在查询参数中时令牌需要 URL 编码（Base64 可能包含 + / =）。
"""

import argparse
import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger('ws-relay-auth')

DEFAULT_MAX_AGE = 300


class RelayAuth:
    """
    升级请求令牌的生成和验证

    Attributes:
        max_age: 令牌有效期（秒），允许的时钟偏差相同
    """

    def __init__(self, secret: str, max_age: int = DEFAULT_MAX_AGE):
        """
        Args:
            secret: 共享密钥字符串
            max_age: 令牌有效期（秒，默认 5 分钟）
        """
        if not secret:
            raise ValueError("认证密钥不能为空")
        self.max_age = max_age
        self._key = self._derive_key(secret.encode('utf-8'))

    @staticmethod
    def _derive_key(secret: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b'ws-relay-v1',
            info=b'upgrade-token',
        )
        return hkdf.derive(secret)

    def _mac(self, name: str, timestamp: int) -> bytes:
        message = f"ws-relay-auth:{name}:{timestamp}".encode('utf-8')
        return hmac.new(self._key, message, hashlib.sha256).digest()

    def generate_token(self, name: str, timestamp: Optional[int] = None) -> str:
        """
        生成认证令牌

        Args:
            name: 客户端名称（不能包含冒号）
            timestamp: Unix 时间戳，默认为当前时间

        Returns:
            Base64 编码的令牌
        """
        if ':' in name:
            raise ValueError("客户端名称不能包含冒号")
        if timestamp is None:
            timestamp = int(time.time())
        mac = base64.b64encode(self._mac(name, timestamp)).decode('ascii')
        token = f"{name}:{timestamp}:{mac}"
        return base64.b64encode(token.encode('utf-8')).decode('ascii')

    def verify_token(self, token: str, now: Optional[int] = None) -> Tuple[bool, Optional[str]]:
        """
        验证认证令牌

        Args:
            token: Base64 编码的令牌
            now: 当前 Unix 时间戳，默认为系统时间

        Returns:
            (是否有效, 客户端名称) 元组
        """
        try:
            decoded = base64.b64decode(token, validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.debug("认证: 令牌不是有效的 Base64")
            return False, None

        parts = decoded.split(':')
        if len(parts) != 3:
            logger.debug(f"认证: 令牌格式无效，获得 {len(parts)} 个部分")
            return False, None

        name, timestamp_str, mac_b64 = parts
        try:
            timestamp = int(timestamp_str)
            mac = base64.b64decode(mac_b64, validate=True)
        except (ValueError, binascii.Error):
            logger.debug("认证: 时间戳或 MAC 格式无效")
            return False, None

        now = int(time.time()) if now is None else now
        if abs(now - timestamp) > self.max_age:
            logger.debug(f"认证: 时间戳已过期。差值: {abs(now - timestamp)}秒")
            return False, None

        if not hmac.compare_digest(mac, self._mac(name, timestamp)):
            logger.debug(f"认证: '{name}' 的 HMAC 不匹配")
            return False, None
        return True, name


def main():
    """命令行工具 - 生成一个认证令牌"""
    parser = argparse.ArgumentParser(description='生成 WebSocket 中继认证令牌')
    parser.add_argument('--secret', '-s', required=True, help='共享密钥')
    parser.add_argument('--name', '-n', default='client', help='客户端名称')
    args = parser.parse_args()

    print(RelayAuth(args.secret).generate_token(args.name))
    return 0


if __name__ == '__main__':
    exit(main())
