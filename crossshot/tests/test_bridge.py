from __future__ import annotations

import asyncio

from crossshot.bridge import NotificationBridge, QueueListener


class Broken:
    def on_screenshots_changed(self, records) -> None:
        raise RuntimeError("boom")

    def on_session_changed(self, sessions) -> None:
        raise RuntimeError("boom")


async def _drain(listener: QueueListener) -> list[tuple[str, object]]:
    # Let call_soon_threadsafe callbacks run before reading.
    await asyncio.sleep(0)
    items = []
    while not listener.queue.empty():
        items.append(listener.queue.get_nowait())
    return items


def test_failing_listener_does_not_block_others() -> None:
    async def scenario() -> None:
        bridge = NotificationBridge()
        listener = QueueListener(asyncio.get_running_loop())
        bridge.add_listener(Broken())
        bridge.add_listener(listener)

        bridge.session_changed({"android": "A", "ios": None})

        assert await _drain(listener) == [("sessions", {"android": "A", "ios": None})]

    asyncio.run(scenario())


def test_each_listener_gets_its_own_copy() -> None:
    async def scenario() -> None:
        loop = asyncio.get_running_loop()
        bridge = NotificationBridge()
        first, second = QueueListener(loop), QueueListener(loop)
        bridge.add_listener(first)
        bridge.add_listener(second)
        records = [{"id": "one", "deviceInfo": {"model": "Pixel 7"}}]

        bridge.screenshots_changed(records)
        [(_, got)] = await _drain(first)
        got[0]["deviceInfo"]["model"] = "changed"

        [(_, other)] = await _drain(second)
        assert other == [{"id": "one", "deviceInfo": {"model": "Pixel 7"}}]
        assert records[0]["deviceInfo"]["model"] == "Pixel 7"

    asyncio.run(scenario())


def test_removed_listener_stops_receiving() -> None:
    async def scenario() -> None:
        bridge = NotificationBridge()
        listener = QueueListener(asyncio.get_running_loop())
        bridge.add_listener(listener)
        bridge.remove_listener(listener)
        bridge.remove_listener(listener)

        bridge.session_changed({"android": None, "ios": None})

        assert await _drain(listener) == []

    asyncio.run(scenario())


def test_full_queue_drops_events() -> None:
    async def scenario() -> None:
        listener = QueueListener(asyncio.get_running_loop(), maxsize=1)

        listener.on_session_changed({"android": "A", "ios": None})
        listener.on_session_changed({"android": "B", "ios": None})

        items = await _drain(listener)
        assert len(items) == 1
        assert items[0][1]["android"] == "A"

    asyncio.run(scenario())


def test_events_from_worker_threads_reach_the_loop() -> None:
    async def scenario() -> None:
        bridge = NotificationBridge()
        listener = QueueListener(asyncio.get_running_loop())
        bridge.add_listener(listener)

        await asyncio.to_thread(bridge.screenshots_changed, [{"id": "one"}])

        event = await asyncio.wait_for(listener.queue.get(), timeout=1)
        assert event == ("screenshots", [{"id": "one"}])

    asyncio.run(scenario())
