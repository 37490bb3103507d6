"""
Live query: a snapshot that is re-fetched whenever its change feed fires
"""
import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

Rows = List[dict]
SnapshotCallback = Callable[[Rows], Any]
ErrorCallback = Callable[[BaseException], Any]


async def call_maybe_async(fn: Callable, *args) -> None:
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


class LiveQuery:
    """Emit a fresh snapshot on start, on every change and every refresh interval.

    Bursts of changes collapse into one refetch and identical consecutive
    snapshots are dropped. After ``cancel()`` returns no callback fires.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], Awaitable[Rows]],
        changes: Callable[[], Awaitable[AsyncIterator[Any]]],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        refresh_interval: Optional[float] = None,
    ):
        self.name = name
        self._fetch = fetch
        self._changes = changes
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._refresh_interval = refresh_interval
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._last: Optional[Rows] = None

    def start(self) -> "LiveQuery":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"live-query:{self.name}")
        return self

    async def cancel(self) -> None:
        self._closed = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _emit(self, rows: Rows) -> None:
        if self._closed or rows == self._last:
            return
        self._last = rows
        await call_maybe_async(self._on_snapshot, rows)

    async def _report(self, exc: BaseException) -> None:
        if self._on_error is None or self._closed:
            return
        try:
            await call_maybe_async(self._on_error, exc)
        except Exception as e:
            logger.error(f"Error handler of {self.name} failed: {e}")

    async def _pump(self, stream: AsyncIterator[Any], dirty: asyncio.Event) -> None:
        try:
            async for _ in stream:
                dirty.set()
        finally:
            # wake the main loop so a dead feed is noticed
            dirty.set()

    async def _run(self) -> None:
        try:
            # the feed is established once this returns; only then is the first fetch taken
            stream = await self._changes()
        except Exception as e:
            logger.error(f"Opening change feed for {self.name} failed: {e}")
            await self._report(e)
            return
        dirty = asyncio.Event()
        pump = asyncio.create_task(self._pump(stream, dirty), name=f"live-query-feed:{self.name}")
        feed_ended = False
        try:
            await self._emit(await self._fetch())
            while not self._closed:
                try:
                    await asyncio.wait_for(dirty.wait(), timeout=self._refresh_interval)
                except asyncio.TimeoutError:
                    pass
                dirty.clear()
                if pump.done() and not feed_ended:
                    # raises if the feed failed
                    pump.result()
                    feed_ended = True
                    logger.warning(f"Change feed for {self.name} ended; falling back to periodic refresh")
                    if self._refresh_interval is None:
                        return
                await self._emit(await self._fetch())
        except Exception as e:
            logger.error(f"Live query {self.name} failed: {e}")
            await self._report(e)
        finally:
            pump.cancel()
            try:
                await pump
            except (asyncio.CancelledError, Exception):
                pass
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"Closing change feed for {self.name}: {e}")
