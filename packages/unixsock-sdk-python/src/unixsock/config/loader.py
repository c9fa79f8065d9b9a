"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
- 配置对象不可变（frozen）：client/server 在构造时拿到一份配置；单次调用的覆盖通过显式参数完成。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class UnixSockClientConfig(BaseModel):
    """client 连接复用参数。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # 连接存活时间低于该阈值时复用，否则重新拨号（秒）
    freshness_window_sec: float = Field(default=5.0, ge=0.0)


class UnixSockServerConfig(BaseModel):
    """
    server 监听与关停参数。

    说明：
    - `socket_mode` 为 None 时不修改 socket 文件权限（访问控制依赖目录权限与 umask）；
    - `shutdown_grace_sec=0` 且 `cancel_sessions_on_stop=false` 时 stop() 不等待在途会话。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    listen_backlog: int = Field(default=64, ge=1)
    poll_interval_sec: float = Field(default=0.2, gt=0.0)
    socket_mode: Optional[int] = Field(default=None, ge=0, le=0o777)
    shutdown_grace_sec: float = Field(default=0.0, ge=0.0)
    cancel_sessions_on_stop: bool = False


class UnixSockConfig(BaseModel):
    """配置根对象（client 与 server 共用）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    config_version: int = Field(default=1, ge=1)
    max_frame_length: int = Field(default=1 << 20, ge=1, le=(1 << 32) - 1)
    timeout_sec: float = Field(default=5.0, gt=0.0)
    expect_response: bool = True
    close_after: bool = True
    client: UnixSockClientConfig = Field(default_factory=UnixSockClientConfig)
    server: UnixSockServerConfig = Field(default_factory=UnixSockServerConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> UnixSockConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `UnixSockConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return UnixSockConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> UnixSockConfig:
    """
    加载并合并多个配置文件，返回校验后的 `UnixSockConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    overlays: list[Dict[str, Any]] = []
    if include_defaults:
        from unixsock.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
