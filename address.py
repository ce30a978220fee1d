"""
WebSocket 中继 - 地址解析模块

解析 CONNECT 帧中的目标地址和配置中的回退地址。

支持的目标地址格式:
- host:port          （以最后一个冒号为分隔符，主机中不能含冒号）
- [ipv6]:port        （方括号包裹的 IPv6 字面量）

端口必须是 1-65535 范围内的十进制整数。
"""

from dataclasses import dataclass
from typing import Optional

from errors import MalformedAddress

MIN_PORT = 1
MAX_PORT = 65535


# ============================================================================
# 地址数据类
# ============================================================================

@dataclass(frozen=True)
class TargetAddress:
    """
    目标地址 - 每个 CONNECT 请求解析一次，解析后不可变

    Attributes:
        host: 主机名或 IP 地址（IPv6 不带方括号）
        port: 端口号（1-65535）
    """
    host: str
    port: int

    def __str__(self) -> str:
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class FallbackAddress:
    """
    回退地址 - 直连失败时依次尝试的中转地址

    Attributes:
        host: 回退主机
        port: 回退端口，None 表示沿用目标端口
    """
    host: str
    port: Optional[int] = None

    def resolve_port(self, target_port: int) -> int:
        return self.port if self.port is not None else target_port

    def __str__(self) -> str:
        host = f"[{self.host}]" if ':' in self.host else self.host
        if self.port is None:
            return host
        return f"{host}:{self.port}"


# ============================================================================
# 解析函数
# ============================================================================

def _parse_port(text: str, port_text: str) -> int:
    if not port_text:
        raise MalformedAddress(text, "empty port")
    # int() 会接受 "+80"、" 80"、"8_0"，这里只允许纯数字
    if not port_text.isascii() or not port_text.isdigit():
        raise MalformedAddress(text, f"port {port_text!r} is not an integer")
    port = int(port_text)
    if port < MIN_PORT or port > MAX_PORT:
        raise MalformedAddress(text, f"port {port} out of range")
    return port


def parse_address(text: str) -> TargetAddress:
    """
    解析 host:port 或 [ipv6]:port 字符串

    Args:
        text: 地址字符串

    Returns:
        TargetAddress: 解析出的目标地址

    Raises:
        MalformedAddress: 缺少分隔冒号、端口为空/非整数/越界、主机为空

    Example:
        >>> parse_address('example.com:443')
        TargetAddress(host='example.com', port=443)
        >>> parse_address('[::1]:8080')
        TargetAddress(host='::1', port=8080)
    """
    if text.startswith('['):
        end = text.find(']')
        if end == -1:
            raise MalformedAddress(text, "unterminated bracket")
        host = text[1:end]
        rest = text[end + 1:]
        if not rest.startswith(':'):
            raise MalformedAddress(text, "missing port separator")
        port_text = rest[1:]
    else:
        sep = text.rfind(':')
        if sep == -1:
            raise MalformedAddress(text, "missing port separator")
        host = text[:sep]
        port_text = text[sep + 1:]

    if not host:
        raise MalformedAddress(text, "empty host")

    return TargetAddress(host=host, port=_parse_port(text, port_text))


def parse_fallback_address(text: str) -> FallbackAddress:
    """
    解析一条回退地址配置

    接受 [ipv6]:port、host:port、host 和不带方括号的 IPv6 字面量。
    端口为空、为 0 或不是数字时视为未指定，连接时沿用目标端口。

    Raises:
        MalformedAddress: 主机为空、方括号未闭合或端口越界
    """
    text = text.strip()
    if text.startswith('['):
        end = text.find(']')
        if end == -1:
            raise MalformedAddress(text, "unterminated bracket")
        host = text[1:end]
        rest = text[end + 1:]
        port_text = rest[1:] if rest.startswith(':') else ''
    elif text.count(':') == 1:
        host, port_text = text.split(':')
    else:
        # 主机名，或不带方括号的 IPv6 字面量
        host, port_text = text, ''

    if not host:
        raise MalformedAddress(text, "empty host")

    port = None
    if port_text.isascii() and port_text.isdigit():
        value = int(port_text)
        if value > MAX_PORT:
            raise MalformedAddress(text, f"port {value} out of range")
        if value >= MIN_PORT:
            port = value
    return FallbackAddress(host=host, port=port)
