"""Device-info normalization shared by the upload endpoint and the proxy stream.

Clients send device metadata as a mapping or as a (possibly JSON) string,
optionally alongside explicit per-field values. Only
allow-listed fields are kept; everything the client sent is preserved under
``raw`` unless it looks like the collector's own /health response echoed back
by a misconfigured relay.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from .config import SERVICE_NAME
from .types import DEVICE_INFO_FIELDS, DeviceInfo

logger = logging.getLogger(__name__)

_INT_FIELDS = {"sdkInt"}


def _parse_payload(payload: Any) -> Any:
    if payload is None or isinstance(payload, Mapping):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        return payload
    text = payload.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return payload


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        pass
    try:
        as_float = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return int(as_float) if as_float.is_integer() else None


def _clean_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in _INT_FIELDS:
        return _coerce_int(value)
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def looks_like_health_payload(raw: Any, marker: str = SERVICE_NAME) -> bool:
    if isinstance(raw, Mapping):
        return "service" in raw and "status" in raw
    if isinstance(raw, str):
        return marker in raw
    return False


def build_device_info(
    payload: Any = None,
    fields: Mapping[str, Any] | None = None,
    *,
    marker: str = SERVICE_NAME,
) -> DeviceInfo:
    """Build a DeviceInfo from a free-form payload plus explicit fields.

    Explicit ``fields`` win over values found in the parsed payload.
    """
    parsed = _parse_payload(payload)
    if parsed is not None and looks_like_health_payload(parsed, marker):
        logger.info("Dropping health-like device info payload")
        parsed = None
    values: dict[str, Any] = {}

    sources: list[Mapping[str, Any]] = []
    if isinstance(parsed, Mapping):
        sources.append(parsed)
    if fields:
        sources.append(fields)
    for source in sources:
        for key in DEVICE_INFO_FIELDS:
            if key not in source:
                continue
            cleaned = _clean_value(key, source[key])
            if cleaned is not None:
                values[key] = cleaned

    raw = dict(parsed) if isinstance(parsed, Mapping) else parsed

    return DeviceInfo(raw=raw, **values)
