"""Proxy stream frames: an optional JSON header line, then the raw payload.

    {"filename": "shot.png", "deviceInfo": {...}}\\n<payload bytes>

The header is only recognized when a line feed appears within the first
8 KiB and everything before it decodes to a JSON object. A line that is
valid JSON but not an object, such as ``"meta"`` or ``[1, 2]``, is
deliberately not taken as a header. Such frames, like any other prefix,
are header-less and their payload is the whole message, line included.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

HEADER_SCAN_LIMIT = 8 * 1024


@dataclass
class ProxyFrame:
    header: dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""


def parse_frame(message: bytes | bytearray | str) -> ProxyFrame:
    if isinstance(message, str):
        message = message.encode("utf-8")
    data = bytes(message)

    newline = data.find(b"\n", 0, HEADER_SCAN_LIMIT)
    if newline < 0:
        return ProxyFrame(payload=data)
    try:
        header = json.loads(data[:newline].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return ProxyFrame(payload=data)
    if not isinstance(header, dict):
        return ProxyFrame(payload=data)
    return ProxyFrame(header=header, payload=data[newline + 1:])


def encode_frame(header: dict[str, Any] | None, payload: bytes) -> bytes:
    if not header:
        return bytes(payload)
    line = json.dumps(header, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if len(line) >= HEADER_SCAN_LIMIT:
        raise ValueError("header must serialize to less than 8 KiB")
    return line + b"\n" + bytes(payload)
