"""
命令路由：把命令名映射到函数，自身即为合法的 server handler。

说明：
- 路由函数签名为 `(arguments) -> Response | str | None`；
- 未注册的命令返回 `Response.fail("unknown command")`（业务失败，传输层仍成功）；
- 注册应在 server 启动前完成；运行期只读，因此可被多个 handler 线程并发调用。
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Union

from unixsock.core.contracts import Arguments, Response

logger = logging.getLogger(__name__)

UNKNOWN_COMMAND = "unknown command"

RouteResult = Union[Response, str, None]
Route = Callable[[Arguments], RouteResult]


class CommandRouter:
    """命令名 -> 处理函数 的注册表。"""

    def __init__(self, routes: Optional[Dict[str, Route]] = None) -> None:
        """创建路由表；可选传入初始 routes。"""

        self._routes: Dict[str, Route] = {}
        for name, fn in (routes or {}).items():
            self.register(name, fn)

    def register(self, name: str, fn: Route) -> None:
        """注册命令；名字按原样精确匹配，为空白或重复时抛 ValueError。"""

        if not isinstance(name, str) or not name.strip():
            raise ValueError("command name must be a non-empty string")
        if name in self._routes:
            raise ValueError(f"command already registered: {name}")
        self._routes[name] = fn

    def command(self, name: str) -> Callable[[Route], Route]:
        """装饰器形式的 register。"""

        def _decorator(fn: Route) -> Route:
            """注册并原样返回 fn。"""

            self.register(name, fn)
            return fn

        return _decorator

    def commands(self) -> List[str]:
        """已注册命令名（排序）。"""

        return sorted(self._routes)

    def __call__(self, command: str, arguments: Arguments) -> Response:
        """按 handler 契约分派一条命令。"""

        fn = self._routes.get(command)
        if fn is None:
            logger.debug("unknown command %r", command)
            return Response.fail(UNKNOWN_COMMAND)
        result = fn(arguments)
        if isinstance(result, Response):
            return result
        if result is None:
            return Response.ok()
        if isinstance(result, str):
            return Response.ok(payload=result)
        raise TypeError(f"route {command!r} returned {type(result).__name__}")
