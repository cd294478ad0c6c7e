import asyncio
import logging

import pytest

from patchmedic.events import EventBus, EventType


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(caplog) -> None:
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(EventType.PATCH_PROGRESS, broken)
    bus.subscribe(EventType.PATCH_PROGRESS, lambda e: seen.append(e.payload["n"]))

    with caplog.at_level(logging.ERROR, logger="events"):
        event = bus.publish(EventType.PATCH_PROGRESS, {"n": 1})
        await bus.drain()

    assert event.type is EventType.PATCH_PROGRESS
    assert seen == [1]
    assert "Event handler failed" in caplog.text


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_handlers() -> None:
    bus = EventBus()
    release = asyncio.Event()
    done = []

    async def slow(event):
        await release.wait()
        done.append(event.payload)

    bus.subscribe(EventType.LOG_SESSION_START, slow)
    bus.publish(EventType.LOG_SESSION_START, {"pid": 1})
    assert done == []

    release.set()
    await bus.drain()
    assert done == [{"pid": 1}]


@pytest.mark.asyncio
async def test_unsubscribe_and_payload_copy() -> None:
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(EventType.UI_SHOW_PATCH_MODAL, lambda e: seen.append(e.payload))

    payload = {"autoStart": True}
    bus.publish(EventType.UI_SHOW_PATCH_MODAL, payload)
    payload["autoStart"] = False
    await bus.drain()

    unsubscribe()
    unsubscribe()
    bus.publish(EventType.UI_SHOW_PATCH_MODAL, {"autoStart": False})
    await bus.drain()

    assert seen == [{"autoStart": True}]


@pytest.mark.asyncio
async def test_drain_waits_for_events_published_by_handlers() -> None:
    bus = EventBus()
    chain = []

    async def first(event):
        await asyncio.sleep(0)
        chain.append("first")
        bus.publish(EventType.UI_GAME_START_CLICK, {})

    bus.subscribe(EventType.PROCESS_STOP, first)
    bus.subscribe(EventType.UI_GAME_START_CLICK, lambda e: chain.append("second"))

    bus.publish(EventType.PROCESS_STOP, {})
    await bus.drain()
    assert chain == ["first", "second"]


def test_publish_without_loop_is_dropped(caplog) -> None:
    bus = EventBus()
    seen = []
    bus.subscribe(EventType.PATCH_PROGRESS, seen.append)

    with caplog.at_level(logging.WARNING, logger="events"):
        bus.publish(EventType.PATCH_PROGRESS, {})
    assert seen == []
    assert "No running event loop" in caplog.text
