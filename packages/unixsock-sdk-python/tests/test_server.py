from __future__ import annotations

import os
import socket
import threading
import time
from pathlib import Path
from typing import List

import pytest

from unixsock.config.loader import load_config_dicts
from unixsock.core.contracts import Envelope, Response, ResponseStatus
from unixsock.core.errors import BindError, DialError, ServerStateError
from unixsock.protocol import codec
from unixsock.runtime.client import UnixSockClient
from unixsock.runtime.router import CommandRouter
from unixsock.runtime.server import UnixSockServer, serve


def echo_handler(command: str, arguments) -> Response:
    return Response.ok(payload=command)


def _loop_threads() -> List[str]:
    return [t.name for t in threading.enumerate() if t.name in ("unixsock-acceptor", "unixsock-dispatcher")]


def _raw_connect(path: Path) -> socket.socket:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(2.0)
    s.connect(str(path))
    return s


def _closed_by_peer(s: socket.socket) -> bool:
    # 对端关闭时若仍有未读字节，Linux 会发送 RST 而不是 FIN
    try:
        return s.recv(1) == b""
    except ConnectionResetError:
        return True


def test_session_loop_returns_two_responses_then_closes(sock_path: Path) -> None:
    """同一连接上两次交换：第一次保持连接，第二次请求关闭后 server 断开。"""

    with serve(sock_path, echo_handler):
        with _raw_connect(sock_path) as s:
            codec.send(s, Envelope(command="first", expect_response=True, close_after=False))
            r1 = codec.decode(s, timeout=2.0)
            codec.send(s, Envelope(command="second", expect_response=True, close_after=True))
            r2 = codec.decode(s, timeout=2.0)

            assert r1.response == Response.ok("first")
            assert r2.response == Response.ok("second")
            # 响应 Envelope 回显请求字段
            assert r2.command == "second"
            assert r2.close_after is True
            # 第二次交换之后 server 关闭连接
            assert s.recv(1) == b""


def test_concurrent_clients_receive_only_their_own_payload(sock_path: Path) -> None:
    """100 个并发 client 各自只收到自己的响应。"""

    n = 100
    errors: list[str] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        cmd = f"hello.world.{i}"
        try:
            with UnixSockClient(sock_path) as client:
                resp = client.send(cmd, {"code": i, "message": "nonsense"}, expect_response=True, close_after=True)
            if resp is None or resp.status is not ResponseStatus.SUCCESS or resp.payload != cmd:
                with lock:
                    errors.append(f"{cmd}: {resp!r}")
        except Exception as e:  # noqa: BLE001
            with lock:
                errors.append(f"{cmd}: {e}")

    with serve(sock_path, echo_handler) as server:
        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert server.sessions.started_total == n

    assert errors == []


def test_unknown_command_is_delivered_as_failure_response(sock_path: Path) -> None:
    """未知命令作为 failure 响应送达，传输层成功。"""

    router = CommandRouter({"ping": lambda args: "pong"})

    with serve(sock_path, router):
        client = UnixSockClient(sock_path)
        resp = client.send("does.not.exist", {})

    assert resp is not None
    assert resp.status is ResponseStatus.FAILURE
    assert resp.error == "unknown command"


def test_handler_exception_becomes_failure_response(sock_path: Path) -> None:
    """handler 抛异常时转为 failure 响应。"""

    def boom(command: str, arguments) -> Response:
        raise RuntimeError("boom")

    with serve(sock_path, boom):
        resp = UnixSockClient(sock_path).send("anything")

    assert resp is not None
    assert resp.succeeded is False
    assert resp.error == "RuntimeError: boom"


def test_handler_returning_non_response_becomes_failure(sock_path: Path) -> None:
    """handler 返回非 Response 时转为 failure 响应。"""

    with serve(sock_path, lambda command, arguments: "not a response"):  # type: ignore[arg-type,return-value]
        resp = UnixSockClient(sock_path).send("x")

    assert resp is not None
    assert resp.status is ResponseStatus.FAILURE


def test_bind_failure_raises_and_spawns_no_threads(tmp_path: Path) -> None:
    """bind 失败：抛 BindError（保留 OSError 因果），且不启动任何循环线程。"""

    before = _loop_threads()
    server = UnixSockServer(tmp_path / "missing-dir" / "ctl.sock", echo_handler)

    with pytest.raises(BindError) as ei:
        server.start()

    assert isinstance(ei.value.__cause__, OSError)
    assert ei.value.details["socket_path"].endswith("ctl.sock")
    assert _loop_threads() == before
    assert server.is_running is False


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores directory permissions")
def test_bind_failure_in_read_only_directory(tmp_path: Path) -> None:
    """只读目录下 bind 失败。"""

    ro = tmp_path / "ro"
    ro.mkdir()
    ro.chmod(0o500)
    try:
        with pytest.raises(BindError):
            serve(ro / "ctl.sock", echo_handler)
    finally:
        ro.chmod(0o700)


def test_bind_failure_when_path_is_in_use(sock_path: Path) -> None:
    """路径已被占用时 bind 失败。"""

    with serve(sock_path, echo_handler):
        with pytest.raises(BindError):
            serve(sock_path, echo_handler)


def test_start_twice_is_rejected(sock_path: Path) -> None:
    """重复 start 抛 ServerStateError。"""

    server = serve(sock_path, echo_handler)
    try:
        with pytest.raises(ServerStateError):
            server.start()
    finally:
        server.stop()


def test_stop_removes_socket_file_and_refuses_new_clients(sock_path: Path) -> None:
    """stop 删除 socket 文件并拒绝新连接；重复 stop 是幂等的。"""

    server = serve(sock_path, echo_handler)
    assert sock_path.exists()

    server.stop()

    assert not sock_path.exists()
    assert _loop_threads() == []
    with pytest.raises(DialError):
        UnixSockClient(sock_path).send("x")
    # 幂等
    assert server.stop() == 0


def test_socket_mode_is_applied_after_bind(sock_path: Path) -> None:
    """配置 socket_mode 时 bind 后 chmod。"""

    cfg = load_config_dicts([{"server": {"socket_mode": 0o600}}])

    with serve(sock_path, echo_handler, config=cfg):
        assert sock_path.stat().st_mode & 0o777 == 0o600


def test_stop_does_not_wait_for_in_flight_sessions_by_default(sock_path: Path, wait_until) -> None:
    """默认 stop 不等待已建立的会话，会话继续可用。"""

    server = serve(sock_path, echo_handler)
    s = _raw_connect(sock_path)
    try:
        codec.send(s, Envelope(command="a", close_after=False))
        assert codec.decode(s, timeout=2.0).response == Response.ok("a")

        assert server.stop() == 1

        # 已建立的会话在 stop 之后仍然可用，直到自然结束
        codec.send(s, Envelope(command="b", close_after=True))
        assert codec.decode(s, timeout=2.0).response == Response.ok("b")
    finally:
        s.close()
    assert wait_until(lambda: server.active_sessions == 0)


def test_stop_can_cancel_outstanding_sessions(sock_path: Path) -> None:
    """cancel_sessions=True 时 stop 关闭未结束的会话。"""

    server = serve(sock_path, echo_handler)
    s = _raw_connect(sock_path)
    try:
        codec.send(s, Envelope(command="a", close_after=False))
        codec.decode(s, timeout=2.0)

        assert server.stop(cancel_sessions=True) == 0
        assert s.recv(1) == b""
    finally:
        s.close()


def test_stop_grace_period_waits_for_sessions(sock_path: Path, wait_until) -> None:
    """grace 期内等待会话自然结束。"""

    release = threading.Event()

    def slow(command: str, arguments) -> Response:
        release.wait(2.0)
        return Response.ok(command)

    server = serve(sock_path, slow)
    results: list = []
    t = threading.Thread(target=lambda: results.append(UnixSockClient(sock_path).send("slow")))
    t.start()
    assert wait_until(lambda: server.active_sessions == 1)

    threading.Timer(0.1, release.set).start()
    assert server.stop(grace_sec=3.0) == 0
    t.join()
    assert results == [Response.ok("slow")]


def test_idle_session_is_closed_after_timeout(sock_path: Path) -> None:
    """空闲连接在 timeout 后被 server 关闭。"""

    cfg = load_config_dicts([{"timeout_sec": 0.2}])

    with serve(sock_path, echo_handler, config=cfg) as server:
        with _raw_connect(sock_path) as s:
            t0 = time.monotonic()
            assert s.recv(1) == b""
            assert time.monotonic() - t0 < 2.0
        assert server.sessions.wait_idle(1.0)


def test_oversized_declared_frame_ends_session_and_server_keeps_serving(sock_path: Path) -> None:
    """声明长度超限：结束该会话，server 继续服务其它连接。"""

    with serve(sock_path, echo_handler):
        with _raw_connect(sock_path) as s:
            # 只发送长度前缀：server 读完前缀即拒绝，不会留下未读字节
            s.sendall((1 << 31).to_bytes(4, "big"))
            assert _closed_by_peer(s)

        resp = UnixSockClient(sock_path).send("still.alive")
        assert resp == Response.ok("still.alive")


def test_request_without_response_is_still_handled(sock_path: Path, wait_until) -> None:
    """无需响应的请求仍被 handler 处理。"""

    seen: list[str] = []

    def record(command: str, arguments) -> Response:
        seen.append(command)
        return Response.ok()

    with serve(sock_path, record):
        with _raw_connect(sock_path) as s:
            codec.send(s, Envelope(command="fire", expect_response=False, close_after=False))
            codec.send(s, Envelope(command="and.forget", expect_response=False, close_after=True))
            assert s.recv(1) == b""
        assert wait_until(lambda: seen == ["fire", "and.forget"])


@pytest.mark.parametrize(
    "payload",
    [
        b'{"cmd":"ping","args":null,"response":{"status":"","error":"","payload":""},"respond":true,"close":true}',
        b'{"cmd":"ping","args":{"code":1},"response":{"status":"","error":"","payload":""},"respond":true,"close":true}',
    ],
)
def test_request_with_placeholder_response_is_answered(sock_path: Path, payload: bytes) -> None:
    """请求帧携带空 status 的占位 response 与 `args: null` 时，server 正常处理并回复。"""

    seen: list = []

    def record(command: str, arguments) -> Response:
        seen.append((command, arguments))
        return Response.ok(payload=command)

    with serve(sock_path, record):
        with _raw_connect(sock_path) as s:
            s.sendall(len(payload).to_bytes(4, "big") + b":" + payload)
            reply = codec.decode(s, timeout=2.0)
            assert _closed_by_peer(s)

    assert reply.response == Response.ok("ping")
    assert seen[0][0] == "ping"
    assert seen[0][1] in ({}, {"code": 1})
