"""
核心契约：Envelope / Response。

说明：
- Envelope 是每次事务的消息单元（请求一个、响应一个），只存在于内存中；
- 模型为 frozen：接收方总是从字节重新构造新的 Envelope，而不是原地修改；
- wire key 与历史实现保持一致（`cmd/args/response/respond/close`），Python 属性名更具描述性；
- `arguments` 使用 pydantic `JsonValue`（str | int | float | bool | None | list | dict），
  既允许任意应用自定义结构，又保证跨边界时可校验。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_validator

Arguments = Dict[str, JsonValue]


class ResponseStatus(str, Enum):
    """响应状态（只有两个合法值）。"""

    SUCCESS = "success"
    FAILURE = "failure"


class Response(BaseModel):
    """
    handler 的处理结果。

    字段语义：
    - status：success | failure
    - error：失败时的可读描述（成功时为空串）
    - payload：handler 返回的字符串负载
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: ResponseStatus
    error: str = ""
    payload: str = ""

    @classmethod
    def ok(cls, payload: str = "") -> "Response":
        """构造成功响应。"""

        return cls(status=ResponseStatus.SUCCESS, payload=payload)

    @classmethod
    def fail(cls, error: str, payload: str = "") -> "Response":
        """构造失败响应（业务失败，不是传输错误）。"""

        return cls(status=ResponseStatus.FAILURE, error=error, payload=payload)

    @property
    def succeeded(self) -> bool:
        """是否为 success。"""

        return self.status is ResponseStatus.SUCCESS


class Envelope(BaseModel):
    """
    Envelope：每次发送都会被序列化的消息单元。

    字段：
    - command：请求的操作名（仅在发起方有意义）
    - arguments：schema-less 参数（由 handler 解释）
    - response：产生响应后才存在
    - expect_response：发送方是否需要回复
    - close_after：本次交换后是否关闭连接
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    command: str = Field(default="", alias="cmd")
    arguments: Arguments = Field(default_factory=dict, alias="args")
    response: Optional[Response] = None
    expect_response: bool = Field(default=True, alias="respond")
    close_after: bool = Field(default=True, alias="close")

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire_placeholders(cls, data: Any) -> Any:
        """
        归一化对端发送的“占位”字段。

        说明：
        - `args: null` 视为空参数 `{}`；
        - `response.status == ""` 表示尚未产生响应，视为 `response: None`；
        - 其它非法 status 仍由字段校验拒绝。
        """

        if not isinstance(data, Mapping):
            return data
        out = dict(data)
        for key in ("args", "arguments"):
            if key in out and out[key] is None:
                out[key] = {}
        resp = out.get("response")
        if isinstance(resp, Mapping) and resp.get("status") == "":
            out["response"] = None
        return out

    def with_response(self, response: Response) -> "Envelope":
        """返回携带 `response` 的新 Envelope（原对象保持不变）。"""

        return self.model_copy(update={"response": response})

    def to_wire_dict(self) -> Dict[str, JsonValue]:
        """按 wire key 导出为 JSON 兼容 dict。"""

        return self.model_dump(mode="json", by_alias=True)
