from __future__ import annotations

import contextlib
import logging
import socket
import time
from pathlib import Path
from typing import Callable, Optional, Union

from unixsock.config.loader import UnixSockConfig
from unixsock.core.contracts import Arguments, Envelope, Response
from unixsock.core.errors import DecodeError, DialError, TransportError
from unixsock.protocol import codec

logger = logging.getLogger(__name__)

_BACKLOG_WAIT_SEC = 0.005


class UnixSockClient:
    """
    本地 Unix socket client（同步 request/response）。

    说明：
    - client 持有一个连接及其建立时间；连接年龄小于 `client.freshness_window_sec` 时复用，否则重新拨号；
    - 重新拨号前会先关闭被替换的旧连接；
    - 请求了 close_after 的事务结束后连接随之关闭（server 端会拆除该连接）；
    - 任何传输错误之后连接都被丢弃，下一次 send() 会重新拨号；本身不做重试。
    """

    def __init__(
        self,
        socket_path: Union[str, Path],
        *,
        config: Optional[UnixSockConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        创建 client（不会立即连接）。

        参数：
        - socket_path：server 的 Unix socket 路径
        - config：不可变配置；缺省使用内置默认值
        - clock：单调时钟（用于计算连接年龄）
        """

        self._socket_path = Path(socket_path)
        self._config = config or UnixSockConfig()
        self._clock = clock
        self._conn: Optional[socket.socket] = None
        self._conn_time = 0.0

    @property
    def socket_path(self) -> Path:
        """server socket 路径。"""

        return self._socket_path

    @property
    def config(self) -> UnixSockConfig:
        """构造时传入的配置。"""

        return self._config

    @property
    def connected(self) -> bool:
        """当前是否持有连接。"""

        return self._conn is not None

    def _dial(self) -> socket.socket:
        """
        建立新连接；失败抛 DialError。

        说明：
        - 带超时的 connect 在 listener backlog 已满时返回 EAGAIN（BlockingIOError），
          这里在 deadline 内等待 backlog 腾出空间，与阻塞式 connect 的语义一致。
        """

        path = str(self._socket_path)
        deadline = codec.deadline_after(self._config.timeout_sec)
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.settimeout(self._config.timeout_sec)
        try:
            while True:
                try:
                    s.connect(path)
                    break
                except BlockingIOError:
                    if deadline is not None and time.monotonic() >= deadline:
                        raise
                    time.sleep(_BACKLOG_WAIT_SEC)
        except OSError as e:
            s.close()
            raise DialError(
                f"could not connect to socket: {e}",
                details={"socket_path": path, "errno": e.errno},
            ) from e
        logger.debug("connected to %s", path)
        return s

    def _reconnect(self) -> socket.socket:
        """按新鲜度窗口复用或替换连接。"""

        now = self._clock()
        if self._conn is not None and now - self._conn_time < self._config.client.freshness_window_sec:
            return self._conn

        conn = self._dial()
        if self._conn is not None:
            logger.debug("replacing stale connection to %s", self._socket_path)
            self._drop()
        self._conn = conn
        self._conn_time = now
        return conn

    def _drop(self) -> None:
        """关闭并遗忘当前连接。"""

        conn, self._conn = self._conn, None
        if conn is not None:
            with contextlib.suppress(OSError):
                conn.close()

    def send(
        self,
        command: str,
        arguments: Optional[Arguments] = None,
        *,
        expect_response: Optional[bool] = None,
        close_after: Optional[bool] = None,
    ) -> Optional[Response]:
        """
        发送一条命令。

        参数：
        - command：命令名
        - arguments：命令参数（JSON 兼容值）
        - expect_response / close_after：单次覆盖；None 时取配置默认值

        返回：
        - expect_response 为 True 时返回 server 的 Response；否则写成功后返回 None

        异常：
        - DialError：无法连接
        - TransportTimeout / FramingError / DecodeError / ShortWriteError / TransportError：传输失败
        """

        cfg = self._config
        respond = cfg.expect_response if expect_response is None else bool(expect_response)
        close = cfg.close_after if close_after is None else bool(close_after)
        request = Envelope(
            command=command,
            arguments=arguments or {},
            expect_response=respond,
            close_after=close,
        )

        conn = self._reconnect()
        try:
            codec.send(conn, request, max_frame_length=cfg.max_frame_length, timeout=cfg.timeout_sec)
            if not respond:
                return None
            reply = codec.decode(conn, max_frame_length=cfg.max_frame_length, timeout=cfg.timeout_sec)
            if reply.response is None:
                raise DecodeError("reply carries no response")
            return reply.response
        except TransportError:
            self._drop()
            raise
        finally:
            if close:
                self._drop()

    def quit(self) -> None:
        """关闭持有的连接（未持有连接时为 no-op）。"""

        self._drop()

    def __enter__(self) -> "UnixSockClient":
        """上下文管理入口。"""

        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """上下文管理：退出时 quit()。"""

        self.quit()
