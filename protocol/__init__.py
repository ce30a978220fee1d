"""
WebSocket 中继协议包

本包提供了中继在 WebSocket 上使用的控制帧协议，包括：
- 帧标签常量
- 入站帧类型及解析
- 每字符一字节编码

使用示例：
    from protocol import parse_inbound, ConnectFrame, MSG_CONNECTED

    frame = parse_inbound('CONNECT:example.com:443|')
    if isinstance(frame, ConnectFrame):
        ...
"""

from .core import (
    # 协议常量
    TAG_CONNECT,
    TAG_DATA,
    TAG_ERROR,
    MSG_CLOSE,
    MSG_CONNECTED,
    CONNECT_DELIMITER,

    # 帧类型
    ConnectFrame,
    DataFrame,
    CloseFrame,
    InboundFrame,

    # 编解码
    encode_byte_string,
    decode_byte_string,
    parse_connect,
    parse_inbound,
    make_connect,
    make_data,
    make_error,
)
