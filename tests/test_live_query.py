"""Tests for live queries and change feed opening."""

import asyncio

from dojo_notices.services.live_query import LiveQuery
from dojo_notices.services.notice_service import NoticeService
from dojo_notices.services.notice_store import ChangeFeed

from tests.conftest import DOJO, NOW, SnapshotCollector


class StubMotorStream:
    """Minimal stand-in for a Motor change stream."""

    def __init__(self, first=None, changes=()):
        self.first = first
        self.changes = list(changes)
        self.closed = False

    async def try_next(self):
        return self.first

    async def next(self):
        if not self.changes:
            raise StopAsyncIteration
        return self.changes.pop(0)

    async def close(self):
        self.closed = True


async def test_first_fetch_waits_for_the_feed_to_open(collector):
    events = []
    feed = asyncio.Queue()

    async def open_feed():
        await asyncio.sleep(0.05)
        events.append("opened")

        async def changes():
            while True:
                yield await feed.get()

        return changes()

    async def fetch():
        events.append("fetch")
        return []

    query = LiveQuery("ordering", fetch, open_feed, collector).start()
    try:
        await collector.wait_for(lambda rows: True)
        assert events == ["opened", "fetch"]
    finally:
        await query.cancel()


async def test_feed_open_failure_is_reported(collector):
    async def open_feed():
        raise RuntimeError("no change streams on a standalone server")

    async def fetch():
        return []

    query = LiveQuery("broken", fetch, open_feed, collector, collector.on_error).start()
    try:
        await asyncio.sleep(0.05)
        assert collector.snapshots == []
        assert isinstance(collector.errors[0], RuntimeError)
    finally:
        await query.cancel()


async def test_write_while_feed_is_opening_reaches_staff_view(service, store, collector):
    store.feed_open_delay = 0.05
    sub = service.subscribe_for_staff(DOJO, collector)
    try:
        await asyncio.sleep(0)
        early = await service.publish_notice(DOJO, title="Early")
        await collector.wait_for(lambda rows: early.notice_id in [r["id"] for r in rows])

        later = await service.publish_notice(DOJO, title="Later")
        rows = await collector.wait_for(lambda rows: later.notice_id in [r["id"] for r in rows])
        assert {r["id"] for r in rows} == {early.notice_id, later.notice_id}
    finally:
        await sub.cancel()


async def test_staff_view_refreshes_without_change_events(store, engine, collector):
    service = NoticeService(store=store, engine=engine, clock=lambda: NOW, refresh_interval=0.02)
    sub = service.subscribe_for_staff(DOJO, collector)
    try:
        await collector.wait_for(lambda rows: rows == [])
        # written behind the feed's back
        store.feeds.clear()
        store.seed_notice(notice_id="quiet", title="Unannounced")

        rows = await collector.wait_for(lambda rows: [r["id"] for r in rows] == ["quiet"])
        assert rows[0]["title"] == "Unannounced"
    finally:
        await sub.cancel()


async def test_change_feed_replays_change_read_while_opening():
    stream = StubMotorStream(first={"documentKey": {"_id": "a"}}, changes=[{"documentKey": {"_id": "b"}}])
    feed = ChangeFeed(stream, await stream.try_next(), "dojos/d1/notices/")

    seen = [change["documentKey"]["_id"] async for change in feed]
    await feed.aclose()

    assert seen == ["a", "b"]
    assert stream.closed


async def test_identical_snapshots_are_not_re_emitted():
    collector = SnapshotCollector()
    feed = asyncio.Queue()

    async def open_feed():
        async def changes():
            while True:
                yield await feed.get()

        return changes()

    async def fetch():
        return [{"id": "n1"}]

    query = LiveQuery("dedupe", fetch, open_feed, collector).start()
    try:
        await collector.wait_for(lambda rows: True)
        feed.put_nowait("change")
        feed.put_nowait("change")
        await asyncio.sleep(0.05)
        assert len(collector.snapshots) == 1
    finally:
        await query.cancel()
