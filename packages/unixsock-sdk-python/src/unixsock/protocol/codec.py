"""
帧编解码（wire format）。

帧布局（双向一致）：

    bytes[0:4]   = 负载长度 L（无符号 big-endian）
    bytes[4]     = 固定分隔符 b":"
    bytes[5:5+L] = Envelope 的 UTF-8 JSON

约束：
- 长度前缀永远等于编码后负载的真实字节数（不含分隔符）；
- 接收方在分配缓冲区之前先校验声明长度不超过 `max_frame_length`；
- 所有读写都受单次事务 deadline 约束；超时（TransportTimeout）与短读（FramingError）是不同错误。
"""

from __future__ import annotations

import json
import socket
import struct
import time
from typing import Optional, Protocol

from pydantic import ValidationError

from unixsock.core.contracts import Envelope
from unixsock.core.errors import (
    DecodeError,
    FrameTooLargeError,
    FramingError,
    ShortWriteError,
    TransportError,
    TransportTimeout,
)

DELIMITER = b":"
LENGTH_PREFIX_BYTES = 4
DEFAULT_MAX_FRAME_LENGTH = 1 << 20
DEFAULT_TIMEOUT_SEC = 5.0

_LENGTH = struct.Struct("!I")
_MAX_WIRE_LENGTH = (1 << 32) - 1
_RECV_CHUNK = 65536


class SocketLike(Protocol):
    """codec 依赖的最小 socket 接口（`socket.socket` 天然满足）。"""

    def settimeout(self, value: Optional[float]) -> None:
        """设置阻塞超时。"""

    def recv(self, bufsize: int) -> bytes:
        """读取最多 bufsize 字节。"""

    def send(self, data: bytes) -> int:
        """写出数据并返回实际写出字节数。"""


def deadline_after(timeout_sec: Optional[float]) -> Optional[float]:
    """把相对超时换算为 monotonic deadline；None 表示不限时。"""

    if timeout_sec is None:
        return None
    return time.monotonic() + float(timeout_sec)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    """返回距离 deadline 的剩余秒数；已过期时抛 TransportTimeout。"""

    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise TransportTimeout("deadline exceeded")
    return left


def encode(envelope: Envelope, *, max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH) -> bytes:
    """
    把 Envelope 编码为完整帧。

    参数：
    - envelope：待发送的消息
    - max_frame_length：负载上限（字节）；超限抛 FrameTooLargeError
    """

    payload = json.dumps(envelope.to_wire_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    limit = min(int(max_frame_length), _MAX_WIRE_LENGTH)
    if len(payload) > limit:
        raise FrameTooLargeError(
            f"encoded payload is {len(payload)} bytes (max {limit})",
            details={"length": len(payload), "max_frame_length": limit},
        )
    return _LENGTH.pack(len(payload)) + DELIMITER + payload


def decode_payload(data: bytes) -> Envelope:
    """把负载字节（不含长度前缀与分隔符）解析为 Envelope。"""

    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"cannot parse payload: {e}") from e
    if not isinstance(obj, dict):
        raise DecodeError("payload root must be a JSON object")
    try:
        return Envelope.model_validate(obj)
    except ValidationError as e:
        raise DecodeError(f"invalid envelope: {e.error_count()} validation error(s)", details={"errors": e.errors(include_url=False)}) from e


def read_exact(sock: SocketLike, n: int, *, deadline: Optional[float] = None) -> bytes:
    """
    从 socket 精确读取 n 字节。

    异常：
    - FramingError：对端在读满 n 字节前关闭，或读过程中出现 OS 错误
    - TransportTimeout：deadline 到期
    """

    buf = bytearray()
    while len(buf) < n:
        sock.settimeout(_remaining(deadline))
        try:
            chunk = sock.recv(min(n - len(buf), _RECV_CHUNK))
        except socket.timeout as e:
            raise TransportTimeout(f"read timed out after {len(buf)} of {n} bytes") from e
        except OSError as e:
            raise FramingError(f"read failed after {len(buf)} of {n} bytes: {e}") from e
        if not chunk:
            raise FramingError(
                f"connection closed after {len(buf)} of {n} bytes",
                details={"received": len(buf), "expected": n},
            )
        buf += chunk
    return bytes(buf)


def write_all(sock: SocketLike, data: bytes, *, deadline: Optional[float] = None) -> None:
    """
    把 data 全部写出。

    异常：
    - TransportTimeout：deadline 到期
    - ShortWriteError：只写出了部分字节（对端关闭或写返回 0）
    - TransportError：一个字节都没写出就失败
    """

    view = memoryview(data)
    sent = 0
    while sent < len(data):
        sock.settimeout(_remaining(deadline))
        try:
            n = sock.send(view[sent:])
        except socket.timeout as e:
            raise TransportTimeout(f"write timed out after {sent} of {len(data)} bytes") from e
        except OSError as e:
            if sent:
                raise ShortWriteError(
                    f"sent only {sent} bytes (message was {len(data)}): {e}",
                    details={"sent": sent, "expected": len(data)},
                ) from e
            raise TransportError(f"failed writing to the socket: {e}") from e
        if n <= 0:
            raise ShortWriteError(
                f"sent only {sent} bytes (message was {len(data)})",
                details={"sent": sent, "expected": len(data)},
            )
        sent += n


def decode(
    sock: SocketLike,
    *,
    max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH,
    timeout: Optional[float] = DEFAULT_TIMEOUT_SEC,
) -> Envelope:
    """
    从 socket 读取并解码一帧。

    流程：
    - 读 4 字节长度前缀（短读 -> FramingError）
    - 声明长度超过 max_frame_length -> FrameTooLargeError（不读取负载）
    - 读 L+1 字节（分隔符 + 负载；短读 -> FramingError）
    - 校验并丢弃分隔符，解析负载（-> DecodeError）
    """

    deadline = deadline_after(timeout)
    (length,) = _LENGTH.unpack(read_exact(sock, LENGTH_PREFIX_BYTES, deadline=deadline))
    if length > max_frame_length:
        raise FrameTooLargeError(
            f"declared frame length {length} exceeds max {max_frame_length}",
            details={"length": length, "max_frame_length": max_frame_length},
        )
    content = read_exact(sock, length + 1, deadline=deadline)
    if content[:1] != DELIMITER:
        raise FramingError(f"unexpected frame delimiter {content[:1]!r}")
    return decode_payload(content[1:])


def send(
    sock: SocketLike,
    envelope: Envelope,
    *,
    max_frame_length: int = DEFAULT_MAX_FRAME_LENGTH,
    timeout: Optional[float] = DEFAULT_TIMEOUT_SEC,
) -> None:
    """编码 Envelope 并在 deadline 内写出整帧。"""

    frame = encode(envelope, max_frame_length=max_frame_length)
    write_all(sock, frame, deadline=deadline_after(timeout))
