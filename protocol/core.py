"""
WebSocket 中继 - 控制帧协议模块
定义 WebSocket 上复用的文本控制帧和二进制数据帧。

版本: 1.0.0

功能概述:
一个 WebSocket 连接承载一个中继会话。客户端通过带标签的文本帧发出
控制指令，原始应用数据既可以放在二进制帧中，也可以用“每字符一字节”
的编码放在 DATA: 文本帧中。

入站帧（客户端 -> 中继）:
┌──────────────────────────────────┬──────────────────────────────┐
│ CONNECT:<host:port>|<首段负载>    │ 请求建立出站连接              │
│ DATA:<负载>                       │ 转发负载到出站连接            │
│ CLOSE                             │ 关闭会话                      │
│ 二进制帧                          │ 原样转发到出站连接            │
└──────────────────────────────────┴──────────────────────────────┘

出站帧（中继 -> 客户端）:
┌──────────────────────────────────┬──────────────────────────────┐
│ CONNECTED                         │ 出站连接已建立                │
│ CLOSE                             │ 出站流已结束                  │
│ ERROR:<消息>                      │ 操作失败                      │
│ 二进制帧                          │ 从出站连接读取的原始字节      │
└──────────────────────────────────┴──────────────────────────────┘

每字符一字节编码:
文本帧中的负载不是 UTF-8 文本。编码时每个 UTF-16 码元对 256 取模，
解码时每个字节映射为同值码点（Latin-1）。超出 U+00FF 的字符会被截断，
这是协议约定，必须逐位一致。
"""

import logging
from dataclasses import dataclass
from typing import Union

from errors import MalformedFrame

logger = logging.getLogger('ws-relay-protocol')


# ============================================================================
# 协议常量
# ============================================================================

TAG_CONNECT = 'CONNECT:'
TAG_DATA = 'DATA:'
TAG_ERROR = 'ERROR:'
MSG_CLOSE = 'CLOSE'
MSG_CONNECTED = 'CONNECTED'

CONNECT_DELIMITER = '|'


# ============================================================================
# 帧类型
# ============================================================================

@dataclass(frozen=True)
class ConnectFrame:
    """
    CONNECT 请求

    Attributes:
        target: 未解析的目标地址字符串（由地址解析器校验）
        payload: 连接建立后立即写入的首段负载，可为空
    """
    target: str
    payload: bytes = b''


@dataclass(frozen=True)
class DataFrame:
    """DATA 文本帧或二进制帧携带的负载"""
    payload: bytes


@dataclass(frozen=True)
class CloseFrame:
    """客户端请求关闭会话"""


InboundFrame = Union[ConnectFrame, DataFrame, CloseFrame]


# ============================================================================
# 每字符一字节编码
# ============================================================================

def encode_byte_string(text: str) -> bytes:
    """
    将每字符一字节的字符串编码为字节

    按 UTF-16 码元计算：每个码元只保留低 8 位。超出 U+FFFF 的字符
    对应两个代理码元，因此编码为两个字节。

    Example:
        >>> encode_byte_string('hi\\u00ff\\u0141')
        b'hi\\xffA'
        >>> encode_byte_string('\\U0001F600')
        b'=\\x00'
    """
    # 小端 UTF-16 中每个码元的低字节位于偶数下标
    return text.encode('utf-16-le', 'surrogatepass')[::2]


def decode_byte_string(data: bytes) -> str:
    """将字节解码为每字符一字节的字符串（每个字节对应同值码点）"""
    return data.decode('latin-1')


# ============================================================================
# 帧解析和构造
# ============================================================================

def parse_connect(message: str) -> ConnectFrame:
    """
    解析 CONNECT:<target>|<payload> 文本帧

    Raises:
        MalformedFrame: 缺少 | 分隔符
    """
    body = message[len(TAG_CONNECT):]
    sep = body.find(CONNECT_DELIMITER)
    if sep == -1:
        raise MalformedFrame("CONNECT frame without '|' delimiter")
    return ConnectFrame(
        target=body[:sep],
        payload=encode_byte_string(body[sep + 1:]),
    )


def parse_inbound(message: Union[str, bytes]) -> InboundFrame:
    """
    解析一条入站 WebSocket 消息

    Args:
        message: 文本帧（str）或二进制帧（bytes）

    Returns:
        ConnectFrame、DataFrame 或 CloseFrame

    Raises:
        MalformedFrame: 未知或结构无效的文本帧
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        return DataFrame(bytes(message))

    if message.startswith(TAG_CONNECT):
        return parse_connect(message)
    if message.startswith(TAG_DATA):
        return DataFrame(encode_byte_string(message[len(TAG_DATA):]))
    if message == MSG_CLOSE:
        return CloseFrame()

    logger.debug(f"未知的控制帧: {message[:32]!r}")
    raise MalformedFrame(f"Unknown control frame {message[:16]!r}")


def make_connect(target: str, payload: bytes = b'') -> str:
    """构造 CONNECT 文本帧（客户端使用）"""
    return f"{TAG_CONNECT}{target}{CONNECT_DELIMITER}{decode_byte_string(payload)}"


def make_data(payload: bytes) -> str:
    """构造 DATA 文本帧（客户端使用）"""
    return TAG_DATA + decode_byte_string(payload)


def make_error(message: str) -> str:
    """构造 ERROR:<message> 文本帧"""
    return TAG_ERROR + message
