"""
unixsock 错误分类（异常类型）。

说明：
- 每一种传输层失败对应一个异常类，并携带稳定错误码（英文大写下划线）；
- handler 的业务失败不是异常：它们以 `status=failure` 的正常响应回传给 client；
- 只有初始 bind 失败会导致 server 启动失败，其余错误只影响当前事务/会话。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class ErrorIssue:
    """结构化错误对象（可序列化，便于日志/上层统计）。"""

    code: str
    message: str
    details: Dict[str, Any]


class UnixSockError(Exception):
    """unixsock 错误基类（携带 `code/message/details`）。"""

    default_code = "UNIXSOCK_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建错误。

        参数：
        - `message`：英文错误消息
        - `code`：稳定错误码；缺省使用类级 `default_code`
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> ErrorIssue:
        """把异常转换为可序列化问题对象。"""

        return ErrorIssue(code=self.code, message=self.message, details=dict(self.details))


class ServerStateError(UnixSockError):
    """server 生命周期误用（例如重复 start）。"""

    default_code = "SERVER_STATE"


class TransportError(UnixSockError):
    """传输层错误基类（socket 读写失败等）。"""

    default_code = "TRANSPORT_ERROR"


class BindError(TransportError):
    """socket 路径无法 bind（不存在/无权限/已占用）；对 server 启动是致命的。"""

    default_code = "BIND_ERROR"


class DialError(TransportError):
    """client 无法连接到 socket（不重试，直接返回给调用方）。"""

    default_code = "DIAL_ERROR"


class FramingError(TransportError):
    """帧读取失败：长度前缀/负载短读，或分隔符不匹配。"""

    default_code = "FRAMING_ERROR"


class FrameTooLargeError(FramingError):
    """声明或编码后的负载长度超过 `max_frame_length`。"""

    default_code = "FRAME_TOO_LARGE"


class DecodeError(TransportError):
    """负载无法解析为合法 Envelope。"""

    default_code = "DECODE_ERROR"


class TransportTimeout(TransportError):
    """读写超过单次事务的 deadline（与 FramingError 是不同的错误类型）。"""

    default_code = "TIMEOUT"


class ShortWriteError(TransportError):
    """实际写出的字节数少于帧长度。"""

    default_code = "SHORT_WRITE"
