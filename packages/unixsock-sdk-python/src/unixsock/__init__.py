"""
unixsock：通过 Unix domain socket 暴露本地控制通道。

公开 API：
- `UnixSockServer` / `serve`：bind + accept + 每连接 handler 线程
- `UnixSockClient`：同步 request/response，带连接复用
- `CommandRouter`：命令名 -> 函数 的 handler 构造器
- `Envelope` / `Response` / `ResponseStatus`：消息契约
- `UnixSockConfig` / `load_config`：不可变配置
"""

from __future__ import annotations

from unixsock.config.loader import UnixSockConfig, load_config, load_config_dicts
from unixsock.core.contracts import Arguments, Envelope, Response, ResponseStatus
from unixsock.core.errors import (
    BindError,
    DecodeError,
    DialError,
    FrameTooLargeError,
    FramingError,
    ServerStateError,
    ShortWriteError,
    TransportError,
    TransportTimeout,
    UnixSockError,
)
from unixsock.runtime.client import UnixSockClient
from unixsock.runtime.router import CommandRouter
from unixsock.runtime.server import Handler, UnixSockServer, serve

__version__ = "0.1.0"

STATUS_OK = ResponseStatus.SUCCESS
STATUS_FAIL = ResponseStatus.FAILURE

__all__ = [
    "Arguments",
    "BindError",
    "CommandRouter",
    "DecodeError",
    "DialError",
    "Envelope",
    "FrameTooLargeError",
    "FramingError",
    "Handler",
    "Response",
    "ResponseStatus",
    "STATUS_FAIL",
    "STATUS_OK",
    "ServerStateError",
    "ShortWriteError",
    "TransportError",
    "TransportTimeout",
    "UnixSockClient",
    "UnixSockConfig",
    "UnixSockError",
    "UnixSockServer",
    "__version__",
    "load_config",
    "load_config_dicts",
    "serve",
]
