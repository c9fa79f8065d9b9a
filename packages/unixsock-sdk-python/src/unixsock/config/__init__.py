"""配置（pydantic schema + YAML overlays）。"""

from __future__ import annotations

from unixsock.config.defaults import load_default_config_dict
from unixsock.config.loader import (
    UnixSockClientConfig,
    UnixSockConfig,
    UnixSockServerConfig,
    load_config,
    load_config_dicts,
)

__all__ = [
    "UnixSockClientConfig",
    "UnixSockConfig",
    "UnixSockServerConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
