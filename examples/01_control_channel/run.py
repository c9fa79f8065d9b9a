"""
本地控制通道最小示例。

用途：
- 启动一个带 CommandRouter 的 server，用 client 走一遍成功/失败/多次交换三种事务；
- 不依赖外网，socket 放在临时目录。
"""

from __future__ import annotations

import argparse
import logging
import tempfile
import time
from pathlib import Path

from unixsock import CommandRouter, Response, UnixSockClient, load_config_dicts, serve


def build_router(started_at: float) -> CommandRouter:
    """构造示例命令表。"""

    router = CommandRouter()

    @router.command("uptime")
    def _uptime(args):
        """返回 server 运行秒数。"""

        return f"{time.monotonic() - started_at:.3f}"

    @router.command("echo")
    def _echo(args):
        """原样回显 text 参数。"""

        text = args.get("text")
        if not isinstance(text, str):
            return Response.fail("text must be a string")
        return text

    return router


def main() -> int:
    """脚本入口：本地控制通道示例。"""

    parser = argparse.ArgumentParser(description="01_control_channel (offline)")
    parser.add_argument("--socket-dir", default=None, help="Directory for the socket file (default: temp dir)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    with tempfile.TemporaryDirectory(prefix="unixsock_") as tmp:
        sock_dir = Path(args.socket_dir or tmp)
        sock_path = sock_dir / "control.sock"
        cfg = load_config_dicts([{"timeout_sec": 2.0, "server": {"socket_mode": 0o600}}])

        with serve(sock_path, build_router(time.monotonic()), config=cfg):
            with UnixSockClient(sock_path, config=cfg) as client:
                r1 = client.send("echo", {"text": "hello"}, close_after=False)
                r2 = client.send("uptime", close_after=False)
                r3 = client.send("reboot", close_after=True)

        print(f"[example] echo -> {r1.status.value} payload={r1.payload!r}")
        print(f"[example] uptime -> {r2.status.value} payload={r2.payload!r}")
        print(f"[example] reboot -> {r3.status.value} error={r3.error!r}")
    print("EXAMPLE_OK: control_channel_01")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
