"""Per-platform device sessions with heartbeat expiry.

Each platform has a single slot. Two claim policies share the same state:
``claim`` is strict and refuses to displace another device, while
``announce`` and ``heartbeat`` replace whoever holds the slot.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Callable

from .bridge import NotificationBridge
from .types import PLATFORMS, ClaimResult, DeviceInfo, DeviceSession, validate_platform

logger = logging.getLogger(__name__)

ALREADY_CONNECTED = "already connected"

DEFAULT_HEARTBEAT_TIMEOUT = 15.0
DEFAULT_SWEEP_INTERVAL = 5.0


class SessionRegistry:
    def __init__(
        self,
        bridge: NotificationBridge | None = None,
        *,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bridge = bridge
        self.heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._slots = {p: DeviceSession(platform=p) for p in PLATFORMS}
        # (platform, device_id) -> last heartbeat; may outlive the slot occupant
        self._heartbeats: dict[tuple[str, str], float] = {}
        self._device_info: dict[str, DeviceInfo] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def claim(self, platform: str, device_id: str) -> ClaimResult:
        """Strict claim: fails if another device holds the slot."""
        platform = validate_platform(platform)
        with self._lock:
            slot = self._slots[platform]
            if slot.occupied and slot.device_id != device_id:
                return ClaimResult(False, ALREADY_CONNECTED)
            changed = not slot.occupied
            self._occupy_locked(slot, device_id)
            snapshot = self._snapshot_locked()
        if changed:
            logger.info("Session claimed: %s -> %s", platform, device_id)
            self._notify(snapshot)
        return ClaimResult(True, changed=changed)

    def announce(
        self,
        platform: str,
        device_id: str,
        device_info: DeviceInfo | None = None,
    ) -> ClaimResult:
        """Passive claim: replaces any occupant and always notifies."""
        result, snapshot = self._refresh_or_replace(platform, device_id, device_info)
        self._notify(snapshot)
        return result

    def heartbeat(
        self,
        platform: str,
        device_id: str,
        device_info: DeviceInfo | None = None,
    ) -> ClaimResult:
        """Liveness signal that doubles as an announce; notifies only on change."""
        result, snapshot = self._refresh_or_replace(platform, device_id, device_info)
        if result.changed:
            self._notify(snapshot)
        return result

    def stop(self, platform: str, device_id: str) -> ClaimResult:
        platform = validate_platform(platform)
        with self._lock:
            slot = self._slots[platform]
            if not slot.occupied or slot.device_id != device_id:
                return ClaimResult(False)
            self._vacate_locked(slot)
            snapshot = self._snapshot_locked()
        logger.info("Session stopped: %s -> %s", platform, device_id)
        self._notify(snapshot)
        return ClaimResult(True, changed=True)

    def sweep(self, now: float | None = None) -> list[tuple[str, str]]:
        """Expire sessions whose last heartbeat is older than the timeout.

        Stale heartbeat records are always forgotten, whether or not their
        device still occupies a slot. Returns the (platform, device_id) pairs
        that were evicted.
        """
        now = self._clock() if now is None else now
        evicted: list[tuple[str, str]] = []
        snapshots: list[dict[str, Any]] = []
        with self._lock:
            for key, seen_at in list(self._heartbeats.items()):
                if now - seen_at <= self.heartbeat_timeout:
                    continue
                platform, device_id = key
                slot = self._slots[platform]
                if slot.device_id == device_id:
                    logger.info("Heartbeat timeout: clearing %s session for %s", platform, device_id)
                    self._vacate_locked(slot)
                    evicted.append(key)
                    snapshots.append(self._snapshot_locked())
                del self._heartbeats[key]
        for snapshot in snapshots:
            self._notify(snapshot)
        return evicted

    async def run_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        """Call ``sweep`` every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current(self, platform: str) -> str | None:
        platform = validate_platform(platform)
        with self._lock:
            return self._slots[platform].device_id

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return self._snapshot_locked(include_info=False)

    def tracked_heartbeats(self) -> int:
        with self._lock:
            return len(self._heartbeats)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _refresh_or_replace(
        self,
        platform: str,
        device_id: str,
        device_info: DeviceInfo | None,
    ) -> tuple[ClaimResult, dict[str, Any]]:
        platform = validate_platform(platform)
        with self._lock:
            slot = self._slots[platform]
            previous = slot.device_id
            self._occupy_locked(slot, device_id)
            if device_info is not None:
                self._device_info[platform] = device_info
            snapshot = self._snapshot_locked(info_platform=platform)
        changed = previous != device_id
        if changed:
            if previous is None:
                logger.info("Session announced: %s -> %s", platform, device_id)
            else:
                logger.info("Session replaced: %s %s -> %s", platform, previous, device_id)
        return ClaimResult(True, changed=changed), snapshot

    def _occupy_locked(self, slot: DeviceSession, device_id: str) -> None:
        now = self._clock()
        if slot.device_id != device_id:
            self._device_info.pop(slot.platform, None)
        slot.device_id = device_id
        slot.last_heartbeat_at = now
        self._heartbeats[(slot.platform, device_id)] = now

    def _vacate_locked(self, slot: DeviceSession) -> None:
        slot.device_id = None
        slot.last_heartbeat_at = None
        self._device_info.pop(slot.platform, None)

    def _snapshot_locked(
        self,
        *,
        include_info: bool = True,
        info_platform: str | None = None,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {p: self._slots[p].device_id for p in PLATFORMS}
        if include_info and info_platform and info_platform in self._device_info:
            out["deviceInfo"] = self._device_info[info_platform].to_json()
        return out

    def _notify(self, snapshot: dict[str, Any]) -> None:
        if self._bridge is not None:
            self._bridge.session_changed(snapshot)
