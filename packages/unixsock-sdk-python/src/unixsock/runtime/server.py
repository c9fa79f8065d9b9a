from __future__ import annotations

import contextlib
import logging
import os
import queue
import socket
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from unixsock.config.loader import UnixSockConfig
from unixsock.core.contracts import Arguments, Envelope, Response
from unixsock.core.errors import BindError, ServerStateError, TransportError
from unixsock.protocol import codec
from unixsock.runtime.sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[str, Arguments], Response]


class UnixSockServer:
    """
    Unix socket 控制通道 server。

    行为：
    - start() 同步 bind；失败立即抛 BindError，且不会启动任何后台线程；
    - bind 成功后启动 acceptor / dispatcher 两个线程，并只等待二者都开始执行（启动屏障，而非就绪保证）；
    - acceptor 通过容量为 1 的 hand-off 队列把连接交给 dispatcher（天然背压：队列满时连接留在 OS backlog）；
    - dispatcher 为每个连接启动一个 handler 线程：读一帧 -> 调 handler -> 按需回复 -> 按需关闭，否则继续读下一帧；
    - stop() 只取消 acceptor / dispatcher 并关闭 listener；在途会话默认不等待，
      可通过 grace_sec / cancel_sessions 借助会话登记表等待或强制结束。
    """

    def __init__(
        self,
        socket_path: Union[str, Path],
        handler: Handler,
        *,
        config: Optional[UnixSockConfig] = None,
    ) -> None:
        """
        创建 server（不 bind，不启动线程）。

        参数：
        - socket_path：监听的 Unix socket 文件路径
        - handler：`(command, arguments) -> Response`；会被多个 handler 线程并发调用
        - config：不可变配置；缺省使用内置默认值
        """

        self._socket_path = Path(socket_path)
        self._handler = handler
        self._config = config or UnixSockConfig()

        self._lock = threading.Lock()
        self._started = False
        self._stopped = False
        self._cancel = threading.Event()
        self._handoff: "queue.Queue[socket.socket]" = queue.Queue(maxsize=1)
        self._sessions = SessionRegistry()

        self._listener: Optional[socket.socket] = None
        self._socket_ino: Optional[int] = None
        self._acceptor: Optional[threading.Thread] = None
        self._dispatcher: Optional[threading.Thread] = None

    @property
    def socket_path(self) -> Path:
        """监听路径。"""

        return self._socket_path

    @property
    def config(self) -> UnixSockConfig:
        """构造时传入的配置。"""

        return self._config

    @property
    def is_running(self) -> bool:
        """已启动且尚未 stop。"""

        with self._lock:
            return self._started and not self._stopped

    @property
    def sessions(self) -> SessionRegistry:
        """会话登记表。"""

        return self._sessions

    @property
    def active_sessions(self) -> int:
        """当前活跃会话数。"""

        return self._sessions.active_count

    def _bind(self) -> socket.socket:
        """创建并 bind listener；任何 OSError 都转换为 BindError。"""

        srv_cfg = self._config.server
        path = str(self._socket_path)
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        bound = False
        try:
            s.bind(path)
            bound = True
            if srv_cfg.socket_mode is not None:
                os.chmod(path, srv_cfg.socket_mode)
            s.listen(srv_cfg.listen_backlog)
            s.settimeout(srv_cfg.poll_interval_sec)
            self._socket_ino = os.stat(path).st_ino
        except OSError as e:
            s.close()
            if bound:
                with contextlib.suppress(OSError):
                    os.unlink(path)
            raise BindError(
                f"could not listen on the unix socket: {e}",
                details={"socket_path": path, "errno": e.errno},
            ) from e
        return s

    def start(self) -> "UnixSockServer":
        """
        bind 并启动 acceptor / dispatcher。

        异常：
        - BindError：路径不可用（不存在/无权限/已占用）
        - ServerStateError：重复 start
        """

        with self._lock:
            if self._started:
                raise ServerStateError("server already started", details={"socket_path": str(self._socket_path)})
            self._listener = self._bind()
            self._started = True

        barrier = threading.Barrier(3)
        self._acceptor = threading.Thread(
            target=self._accept_loop, args=(barrier,), name="unixsock-acceptor", daemon=True
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, args=(barrier,), name="unixsock-dispatcher", daemon=True
        )
        self._acceptor.start()
        self._dispatcher.start()
        barrier.wait()
        logger.debug("unixsock server listening on %s", self._socket_path)
        return self

    def _accept_loop(self, barrier: threading.Barrier) -> None:
        """acceptor：接受连接并交给 dispatcher，直到收到取消信号。"""

        barrier.wait()
        listener = self._listener
        assert listener is not None
        poll = self._config.server.poll_interval_sec
        while not self._cancel.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._cancel.is_set():
                    break
                logger.warning("accept failed on %s", self._socket_path, exc_info=True)
                self._cancel.wait(poll)
                continue

            if not self._hand_off(conn):
                with contextlib.suppress(OSError):
                    conn.close()
                break

    def _hand_off(self, conn: socket.socket) -> bool:
        """把连接放入单槽队列；队列满时阻塞（背压），取消时返回 False。"""

        poll = self._config.server.poll_interval_sec
        while not self._cancel.is_set():
            try:
                self._handoff.put(conn, timeout=poll)
                return True
            except queue.Full:
                continue
        return False

    def _dispatch_loop(self, barrier: threading.Barrier) -> None:
        """dispatcher：为每个交接过来的连接启动独立 handler 线程。"""

        barrier.wait()
        poll = self._config.server.poll_interval_sec
        while not self._cancel.is_set():
            try:
                conn = self._handoff.get(timeout=poll)
            except queue.Empty:
                continue
            session = self._sessions.register(conn)
            t = threading.Thread(
                target=self._serve_session, args=(session,), name=f"unixsock-session-{session.id}", daemon=True
            )
            t.start()

    def _invoke(self, request: Envelope) -> Response:
        """
        调用注入的 handler。

        说明：
        - handler 抛异常或返回非 Response 时转换为 failure 响应（传输层仍然成功）。
        """

        try:
            result = self._handler(request.command, request.arguments)
        except Exception as e:
            logger.warning("handler raised for command %r", request.command, exc_info=True)
            return Response.fail(f"{type(e).__name__}: {e}")
        if not isinstance(result, Response):
            logger.warning("handler returned %s for command %r", type(result).__name__, request.command)
            return Response.fail("handler returned an invalid response")
        return result

    def _serve_session(self, session: Session) -> None:
        """单连接循环；任何解码/帧/超时错误都视为会话正常结束。"""

        cfg = self._config
        logger.debug("session %d started", session.id)
        try:
            with session.conn as conn:
                while True:
                    try:
                        request = codec.decode(conn, max_frame_length=cfg.max_frame_length, timeout=cfg.timeout_sec)
                    except TransportError as e:
                        logger.debug("session %d ended on receive: %s", session.id, e)
                        return

                    response = self._invoke(request)
                    session.exchanges += 1

                    if request.expect_response:
                        try:
                            codec.send(
                                conn,
                                request.with_response(response),
                                max_frame_length=cfg.max_frame_length,
                                timeout=cfg.timeout_sec,
                            )
                        except TransportError as e:
                            logger.debug("session %d ended on send: %s", session.id, e)
                            return

                    if request.close_after:
                        logger.debug("session %d closed by peer request", session.id)
                        return
        finally:
            self._sessions.unregister(session)

    def stop(self, *, grace_sec: Optional[float] = None, cancel_sessions: Optional[bool] = None) -> int:
        """
        停止 server。

        参数：
        - grace_sec：等待在途会话结束的最长秒数；None 时取 `server.shutdown_grace_sec`（默认 0，不等待）
        - cancel_sessions：是否强制关闭剩余会话；None 时取 `server.cancel_sessions_on_stop`

        返回：
        - stop 完成后仍活跃的会话数（幂等：重复调用只返回该计数）
        """

        with self._lock:
            if not self._started or self._stopped:
                return self._sessions.active_count
            self._stopped = True

        srv_cfg = self._config.server
        self._cancel.set()
        for t in (self._acceptor, self._dispatcher):
            if t is not None:
                t.join()

        if self._listener is not None:
            with contextlib.suppress(OSError):
                self._listener.close()
        self._unlink_socket_file()

        # 已 accept 但尚未交接的连接直接关闭
        while True:
            try:
                conn = self._handoff.get_nowait()
            except queue.Empty:
                break
            with contextlib.suppress(OSError):
                conn.close()

        grace = srv_cfg.shutdown_grace_sec if grace_sec is None else float(grace_sec)
        if grace > 0:
            self._sessions.wait_idle(grace)
        cancel = srv_cfg.cancel_sessions_on_stop if cancel_sessions is None else bool(cancel_sessions)
        if cancel:
            n = self._sessions.cancel_all()
            if n:
                logger.debug("cancelled %d active session(s)", n)
                self._sessions.wait_idle(self._config.timeout_sec)

        remaining = self._sessions.active_count
        logger.debug("unixsock server on %s stopped (%d session(s) still active)", self._socket_path, remaining)
        return remaining

    def _unlink_socket_file(self) -> None:
        """删除本 server 创建的 socket 文件（inode 不同则说明已被替换，不删）。"""

        path = str(self._socket_path)
        with contextlib.suppress(OSError):
            if self._socket_ino is not None and os.stat(path).st_ino == self._socket_ino:
                os.unlink(path)

    def __enter__(self) -> "UnixSockServer":
        """上下文管理：未启动时自动 start。"""

        if not self._started:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """上下文管理：退出时 stop。"""

        self.stop()


def serve(
    socket_path: Union[str, Path],
    handler: Handler,
    *,
    config: Optional[UnixSockConfig] = None,
) -> UnixSockServer:
    """创建并启动 server（bind 失败时抛 BindError）。"""

    return UnixSockServer(socket_path, handler, config=config).start()
