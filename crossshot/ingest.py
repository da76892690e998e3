from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from werkzeug.utils import secure_filename

from .config import SERVICE_NAME
from .device_info import build_device_info
from .framing import ProxyFrame
from .store import MetadataStore
from .types import DEVICE_INFO_FIELDS, DeviceInfo, ScreenshotRecord, now_iso

logger = logging.getLogger(__name__)

_SAFE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,16}$")


class MissingFile(ValueError):
    def __init__(self) -> None:
        super().__init__("Screenshot file missing")


class PayloadTooLarge(ValueError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def clean_filename(name: Any, default_stem: str) -> str:
    """Sanitize a client-supplied filename, keeping a plain ASCII extension.

    ``secure_filename`` drops non-ASCII characters, so a name like
    ``截图.png`` would otherwise come out as ``png``. The stem and suffix
    are cleaned separately and an emptied stem is replaced by
    ``default_stem``. Returns "" when nothing usable remains.
    """
    text = str(name or "").strip().replace(" ", "_")
    suffix = Path(text).suffix
    if not _SAFE_SUFFIX.match(suffix):
        suffix = ""
    stem = secure_filename(text[: len(text) - len(suffix)])
    if not stem and not suffix:
        return ""
    return f"{stem or default_stem}{suffix}"


class Ingestor:
    """Turns uploaded bytes into stored files and ScreenshotRecords.

    Shared by the multipart endpoint and the proxy stream so both transports
    build identical records.
    """

    def __init__(
        self,
        storage_dir: Path,
        store: MetadataStore,
        *,
        max_bytes: int | None = None,
        service_marker: str = SERVICE_NAME,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.store = store
        self.max_bytes = max_bytes
        self.service_marker = service_marker
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def check_size(self, size: int) -> None:
        if self.max_bytes and size > self.max_bytes:
            raise PayloadTooLarge(size, self.max_bytes)

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    def ingest_upload(
        self,
        data: bytes | None,
        original_filename: str | None,
        form: Mapping[str, Any] | None = None,
    ) -> ScreenshotRecord:
        """Store a multipart upload. ``form`` holds the non-file form fields."""
        if data is None:
            raise MissingFile()
        self.check_size(len(data))
        form = form or {}

        sanitized = clean_filename(original_filename, "upload") or "upload.png"
        filename = f"screenshot_{_epoch_ms()}_{sanitized}"
        explicit = {k: form[k] for k in DEVICE_INFO_FIELDS if k in form}
        device_info = build_device_info(
            form.get("deviceInfo"), explicit, marker=self.service_marker
        )
        return self._store_bytes(
            data,
            filename,
            device_info,
            _string_or_none(form.get("timestamp")),
        )

    def ingest_proxy(self, frame: ProxyFrame) -> ScreenshotRecord:
        self.check_size(len(frame.payload))
        header = frame.header

        fallback_stem = f"proxy_{_epoch_ms()}"
        filename = clean_filename(header.get("filename"), fallback_stem) or f"{fallback_stem}.bin"
        payload = header.get("deviceInfo")
        explicit = payload if isinstance(payload, Mapping) else None
        device_info = build_device_info(payload, explicit, marker=self.service_marker)
        return self._store_bytes(
            frame.payload,
            filename,
            device_info,
            _string_or_none(header.get("timestamp")),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _store_bytes(
        self,
        data: bytes,
        filename: str,
        device_info: DeviceInfo,
        timestamp: str | None,
    ) -> ScreenshotRecord:
        path = self._write_new_file(filename, data)
        try:
            record = ScreenshotRecord(
                id=self._new_id(),
                filename=path.name,
                storagePath=str(path.resolve()),
                deviceInfo=device_info,
                timestamp=timestamp or now_iso(),
                size=path.stat().st_size,
            )
            self.store.append(record)
        except Exception:
            path.unlink(missing_ok=True)
            raise
        logger.info("Stored screenshot %s (%d bytes) as %s", record.id, record.size, record.filename)
        return record

    def _write_new_file(self, filename: str, data: bytes) -> Path:
        """Write ``data`` under ``filename`` without clobbering an existing file."""
        stem, suffix = Path(filename).stem, Path(filename).suffix
        path = self.storage_dir / filename
        while True:
            if not self._reserved(path):
                try:
                    with path.open("xb") as fh:
                        fh.write(data)
                except FileExistsError:
                    pass
                except OSError:
                    path.unlink(missing_ok=True)
                    raise
                else:
                    return path
            path = self.storage_dir / f"{stem}_{uuid.uuid4().hex[:8]}{suffix}"

    def _reserved(self, path: Path) -> bool:
        snapshot = self.store.snapshot_path
        return path.name in (snapshot.name, snapshot.name + ".tmp")

    def _new_id(self) -> str:
        while True:
            screenshot_id = str(uuid.uuid4())
            if not self.store.contains(screenshot_id):
                return screenshot_id


def _string_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
