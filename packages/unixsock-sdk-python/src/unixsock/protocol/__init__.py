"""wire 协议（帧编解码）。"""

from __future__ import annotations

from unixsock.protocol.codec import DELIMITER, decode, decode_payload, encode, send

__all__ = ["DELIMITER", "decode", "decode_payload", "encode", "send"]
