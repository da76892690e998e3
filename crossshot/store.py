from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from .bridge import NotificationBridge
from .types import ScreenshotRecord

logger = logging.getLogger(__name__)


class MetadataStore:
    """Ordered in-memory list of screenshot records mirrored to one JSON snapshot.

    The snapshot is rewritten in full after every mutation. Snapshot I/O
    failures are logged and never raised; the in-memory list stays
    authoritative for the running process.
    """

    def __init__(self, snapshot_path: Path, bridge: NotificationBridge | None = None) -> None:
        self.snapshot_path = Path(snapshot_path)
        self._bridge = bridge
        self._records: list[ScreenshotRecord] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshot I/O
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replace the in-memory list with the persisted snapshot.

        Records whose backing file is gone are discarded. Returns the number
        of records kept.
        """
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = []
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read snapshot %s: %s", self.snapshot_path, exc)
            data = []
        if not isinstance(data, list):
            logger.error("Ignoring snapshot %s: expected a list", self.snapshot_path)
            data = []

        kept: list[ScreenshotRecord] = []
        dropped = 0
        seen: set[str] = set()
        for entry in data:
            try:
                record = ScreenshotRecord.from_json(entry)
            except (KeyError, TypeError, ValueError):
                dropped += 1
                continue
            if record.id in seen or not Path(record.storagePath).is_file():
                dropped += 1
                continue
            seen.add(record.id)
            kept.append(record)

        with self._lock:
            self._records = kept
            if dropped:
                self._persist_locked()
        logger.info("Loaded %d screenshots (%d discarded)", len(kept), dropped)
        return len(kept)

    def persist(self) -> None:
        with self._lock:
            self._persist_locked()

    def _persist_locked(self) -> None:
        rows = [r.to_json() for r in self._records]
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.snapshot_path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(rows, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self.snapshot_path)
        except OSError as exc:
            logger.error("Failed to persist snapshot %s: %s", self.snapshot_path, exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_records(self) -> list[ScreenshotRecord]:
        with self._lock:
            return list(self._records)

    def get(self, screenshot_id: str) -> ScreenshotRecord | None:
        with self._lock:
            for record in self._records:
                if record.id == screenshot_id:
                    return record
        return None

    def contains(self, screenshot_id: str) -> bool:
        return self.get(screenshot_id) is not None

    def to_json(self) -> list[dict[str, Any]]:
        return [r.to_json() for r in self.list_records()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, record: ScreenshotRecord) -> None:
        with self._lock:
            if any(r.id == record.id for r in self._records):
                raise ValueError(f"duplicate screenshot id: {record.id}")
            self._records.append(record)
            self._persist_locked()
        self._notify()

    def remove(self, screenshot_id: str) -> bool:
        with self._lock:
            index = next(
                (i for i, r in enumerate(self._records) if r.id == screenshot_id),
                None,
            )
            if index is None:
                return False
            record = self._records.pop(index)
            self._persist_locked()
        _unlink_quietly(Path(record.storagePath))
        self._notify()
        return True

    def clear_all(self) -> bool:
        try:
            with self._lock:
                records = self._records
                self._records = []
                for record in records:
                    _unlink_quietly(Path(record.storagePath))
                self.snapshot_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to clear screenshots: %s", exc)
            return False
        self._notify()
        return True

    def _notify(self) -> None:
        if self._bridge is not None:
            self._bridge.screenshots_changed(self.to_json())


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete %s: %s", path, exc)
