"""
本地控制通道运行时（Unix domain socket + 长度前缀 JSON 帧）。

实现定位：
- 让常驻进程向本机受信任的 client 暴露控制/监控通道，不提供网络 API 或 UI；
- 访问控制完全依赖 socket 路径的文件系统权限，协议本身不做鉴权/加密；
- 单连接内严格请求/响应顺序（不做 pipelining），跨连接互不影响。
"""

from __future__ import annotations
