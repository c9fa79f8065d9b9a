from __future__ import annotations

import hashlib
import os
import socket
import tempfile
import time
from pathlib import Path
from typing import Callable

import pytest

if os.name == "nt" or not hasattr(socket, "AF_UNIX"):  # pragma: no cover
    collect_ignore_glob = ["test_*.py"]


@pytest.fixture()
def sock_path(tmp_path: Path) -> Path:
    """
    测试用 socket 路径。

    说明：
    - AF_UNIX 路径长度有上限（常见 ~104/108 bytes）；tmp_path 过深时降级到更短的临时目录。
    """

    p = tmp_path / "ctl.sock"
    if len(str(p)) <= 90:
        return p
    h = hashlib.sha256(str(tmp_path).encode("utf-8")).hexdigest()[:16]
    d = Path(tempfile.gettempdir()) / f"unixsock_{h}"
    d.mkdir(parents=True, exist_ok=True)
    short = d / "ctl.sock"
    if short.exists():
        short.unlink()
    return short


def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """轮询直到 predicate 为真或超时。"""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    """返回轮询辅助函数。"""

    return _wait_until
