import asyncio
import logging

from replay_cam.events import CaptureFailed, EventChannel, PeerChanged, StatusReceived


def test_publish_reaches_subscribers_of_the_kind():
    channel = EventChannel()
    seen: list[object] = []
    channel.subscribe(StatusReceived, seen.append)
    channel.publish(StatusReceived("peer", "hello"))
    channel.publish(PeerChanged("peer", True))
    assert seen == [StatusReceived("peer", "hello")]


def test_unsubscribe_stops_delivery():
    channel = EventChannel()
    seen: list[object] = []
    unsubscribe = channel.subscribe(PeerChanged, seen.append)
    assert channel.subscriber_count(PeerChanged) == 1
    unsubscribe()
    unsubscribe()
    channel.publish(PeerChanged("peer", False, "gone"))
    assert seen == []
    assert channel.subscriber_count(PeerChanged) == 0


def test_failing_handler_does_not_block_others(caplog):
    caplog.set_level(logging.ERROR, logger="replay_cam.events")
    channel = EventChannel()
    seen: list[object] = []

    def broken(event: object) -> None:
        raise RuntimeError("boom")

    channel.subscribe(CaptureFailed, broken)
    channel.subscribe(CaptureFailed, seen.append)
    channel.publish(CaptureFailed("peer", "no_data", "empty"))
    assert len(seen) == 1
    assert "Event handler failed" in caplog.text


def test_async_handlers_are_scheduled():
    async def scenario() -> list[str]:
        channel = EventChannel()
        seen: list[str] = []

        async def handler(event: StatusReceived) -> None:
            await asyncio.sleep(0)
            seen.append(event.text)

        channel.subscribe(StatusReceived, handler)
        channel.publish(StatusReceived("peer", "one"))
        channel.publish(StatusReceived("peer", "two"))
        await channel.drain()
        return seen

    assert asyncio.run(scenario()) == ["one", "two"]


def test_listen_collects_events_while_open():
    async def scenario() -> tuple[int, object]:
        channel = EventChannel()
        async with channel.listen(PeerChanged, StatusReceived) as queue:
            channel.publish(PeerChanged("peer", True))
            channel.publish(StatusReceived("peer", "ready"))
            first = await queue.get()
            size = queue.qsize()
        channel.publish(StatusReceived("peer", "late"))
        return size, first

    size, first = asyncio.run(scenario())
    assert size == 1
    assert first == PeerChanged("peer", True)
