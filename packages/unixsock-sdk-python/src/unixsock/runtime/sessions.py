"""
server 端会话登记表（counted set of active sessions）。

说明：
- 每个被接受的连接对应一个 Session，由其 handler 线程注册/注销；
- stop() 可以借助登记表等待在途会话结束（grace period），或强制关闭它们的 socket。
"""

from __future__ import annotations

import contextlib
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class Session:
    """一个 server 端连接的生命周期记录。"""

    id: int
    conn: socket.socket
    started_monotonic: float = field(default_factory=time.monotonic)
    exchanges: int = 0


class SessionRegistry:
    """线程安全的活跃会话集合。"""

    def __init__(self) -> None:
        """创建空登记表；session id 在单进程内自增生成。"""

        self._cond = threading.Condition()
        self._next_id = 1
        self._started_total = 0
        self._sessions: Dict[int, Session] = {}

    def register(self, conn: socket.socket) -> Session:
        """登记一个新连接并返回其 Session。"""

        with self._cond:
            session = Session(id=self._next_id, conn=conn)
            self._next_id += 1
            self._started_total += 1
            self._sessions[session.id] = session
            return session

    def unregister(self, session: Session) -> None:
        """注销会话（重复注销是 no-op），并唤醒 wait_idle 的等待者。"""

        with self._cond:
            self._sessions.pop(session.id, None)
            self._cond.notify_all()

    @property
    def active_count(self) -> int:
        """当前活跃会话数。"""

        with self._cond:
            return len(self._sessions)

    @property
    def started_total(self) -> int:
        """累计登记过的会话数。"""

        with self._cond:
            return self._started_total

    def snapshot(self) -> List[Session]:
        """返回活跃会话的快照（按 id 排序）。"""

        with self._cond:
            return [self._sessions[k] for k in sorted(self._sessions)]

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        阻塞直到没有活跃会话。

        参数：
        - timeout：最长等待秒数；None 表示一直等待

        返回：
        - True：已无活跃会话；False：超时
        """

        with self._cond:
            return self._cond.wait_for(lambda: not self._sessions, timeout=timeout)

    def cancel_all(self) -> int:
        """
        强制结束所有活跃会话：对其 socket 做双向 shutdown。

        说明：
        - handler 线程阻塞中的读会立即返回 EOF，从而按 FramingError 正常结束会话；
        - 会话的注销仍由 handler 线程自己完成。
        """

        sessions = self.snapshot()
        for s in sessions:
            with contextlib.suppress(OSError):
                s.conn.shutdown(socket.SHUT_RDWR)
        return len(sessions)
