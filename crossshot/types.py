from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

PLATFORMS = ("android", "ios")

DEVICE_INFO_FIELDS = (
    "platform",
    "name",
    "model",
    "systemVersion",
    "identifierForVendor",
    "manufacturer",
    "version",
    "sdkInt",
    "brand",
    "device",
)


class UnsupportedPlatform(ValueError):
    def __init__(self, platform: Any):
        super().__init__(f"unsupported platform: {platform}")
        self.platform = platform


def validate_platform(platform: Any) -> str:
    normalized = str(platform or "").strip().lower()
    if normalized not in PLATFORMS:
        raise UnsupportedPlatform(platform)
    return normalized


@dataclass
class DeviceInfo:
    platform: str | None = None
    name: str | None = None
    model: str | None = None
    systemVersion: str | None = None
    identifierForVendor: str | None = None
    manufacturer: str | None = None
    version: str | None = None
    sdkInt: int | None = None
    brand: str | None = None
    device: str | None = None
    raw: Any = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in DEVICE_INFO_FIELDS:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.raw is not None:
            out["raw"] = copy.deepcopy(self.raw)
        return out

    @classmethod
    def from_json(cls, data: Any) -> "DeviceInfo":
        if not isinstance(data, dict):
            return cls(raw=data) if data is not None else cls()
        kwargs = {key: data[key] for key in DEVICE_INFO_FIELDS if data.get(key) is not None}
        return cls(raw=data.get("raw"), **kwargs)


@dataclass(frozen=True)
class ScreenshotRecord:
    id: str
    filename: str
    storagePath: str
    deviceInfo: DeviceInfo = field(default_factory=DeviceInfo)
    timestamp: str = ""
    size: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "storagePath": self.storagePath,
            "deviceInfo": self.deviceInfo.to_json(),
            "timestamp": self.timestamp,
            "size": self.size,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ScreenshotRecord":
        """Rebuild a record from its snapshot form.

        Raises KeyError/TypeError/ValueError for entries that are not records.
        """
        return cls(
            id=str(data["id"]),
            filename=str(data["filename"]),
            storagePath=str(data["storagePath"]),
            deviceInfo=DeviceInfo.from_json(data.get("deviceInfo")),
            timestamp=str(data.get("timestamp") or ""),
            size=int(data.get("size") or 0),
        )


@dataclass
class DeviceSession:
    platform: str
    device_id: str | None = None
    last_heartbeat_at: float | None = None

    @property
    def occupied(self) -> bool:
        return self.device_id is not None


@dataclass(frozen=True)
class ClaimResult:
    success: bool
    reason: str | None = None
    changed: bool = False

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.reason:
            out["reason"] = self.reason
        return out


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
