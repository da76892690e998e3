"""Device-side client for the collector REST API.

Used by relays and test harnesses that stand in for a phone: uploads
screenshots, announces the device, keeps it alive with heartbeats, and
builds proxy stream frames.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from .framing import encode_frame

logger = logging.getLogger(__name__)

DEFAULT_COLLECTOR_URL = "http://localhost:8080"


class CollectorError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class CollectorClient:
    def __init__(
        self,
        base_url: str = DEFAULT_COLLECTOR_URL,
        *,
        timeout: float = 10.0,
        http: httpx.Client | None = None,
    ) -> None:
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "CollectorClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _json(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}
        if resp.status_code >= 400:
            raise CollectorError(resp.status_code, str(body.get("error") or body))
        return body

    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return self._json(self._http.get("/health"))

    def upload(
        self,
        path: Path | str,
        *,
        device_info: dict[str, Any] | str | None = None,
        timestamp: str | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Upload a screenshot file. Extra keyword args become form fields."""
        path = Path(path)
        data: dict[str, str] = {k: str(v) for k, v in fields.items() if v is not None}
        if device_info is not None:
            data["deviceInfo"] = device_info if isinstance(device_info, str) else json.dumps(device_info)
        if timestamp:
            data["timestamp"] = timestamp
        with path.open("rb") as fh:
            resp = self._http.post(
                "/api/upload",
                files={"screenshot": (path.name, fh, "application/octet-stream")},
                data=data,
            )
        return self._json(resp)["data"]

    def list_screenshots(self) -> list[dict[str, Any]]:
        return self._json(self._http.get("/api/screenshots"))["data"]

    def delete_screenshot(self, screenshot_id: str) -> bool:
        try:
            return bool(self._json(self._http.delete(f"/api/screenshots/{screenshot_id}"))["success"])
        except CollectorError as exc:
            if exc.status_code == 404:
                return False
            raise

    def announce(self, platform: str, device_id: str, device_info: dict[str, Any] | None = None) -> bool:
        return self._post_device("/api/announce", platform, device_id, device_info)

    def heartbeat(self, platform: str, device_id: str, device_info: dict[str, Any] | None = None) -> bool:
        return self._post_device("/api/heartbeat", platform, device_id, device_info)

    def stop(self, platform: str, device_id: str) -> bool:
        return self._post_device("/api/announce/stop", platform, device_id, None)

    def sessions(self) -> dict[str, Any]:
        return self._json(self._http.get("/api/sessions"))["data"]

    def _post_device(
        self,
        path: str,
        platform: str,
        device_id: str,
        device_info: dict[str, Any] | None,
    ) -> bool:
        body: dict[str, Any] = {"platform": platform, "deviceId": device_id}
        if device_info is not None:
            body["deviceInfo"] = device_info
        return bool(self._json(self._http.post(path, json=body)).get("success"))


def proxy_frame(
    payload: bytes,
    *,
    filename: str | None = None,
    device_info: dict[str, Any] | None = None,
    timestamp: str | None = None,
) -> bytes:
    header: dict[str, Any] = {}
    if filename:
        header["filename"] = filename
    if device_info is not None:
        header["deviceInfo"] = device_info
    if timestamp:
        header["timestamp"] = timestamp
    return encode_frame(header, payload)
