"""
Merged member view over the broadcast and personal inbox live queries
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from dojo_notices.services.delivery_window import as_datetime
from dojo_notices.services.live_query import ErrorCallback, Rows, SnapshotCallback, call_maybe_async
from dojo_notices.services.notice_store import is_permission_error

logger = logging.getLogger(__name__)

BROADCAST = "broadcast"
INBOX = "inbox"

# (on_snapshot, on_error) -> started subscription exposing ``async cancel()``
StreamOpener = Callable[[SnapshotCallback, ErrorCallback], Any]


def row_key(row: Dict[str, Any]) -> str:
    """Notice id of a row; inbox rows may only carry ``notice_id``."""
    return str(row.get("id") or row.get("notice_id") or "")


def merge_rows(*streams: Iterable[Dict[str, Any]]) -> Rows:
    """Union rows by notice id, keep the most recently updated copy, newest send_at first.

    On equal ``updated_at`` the row from the later stream wins.
    """
    merged: Dict[str, Dict[str, Any]] = {}
    for rows in streams:
        for row in rows:
            key = row_key(row)
            if not key:
                continue
            current = merged.get(key)
            if current is None or as_datetime(row.get("updated_at")) >= as_datetime(current.get("updated_at")):
                merged[key] = row
    return sorted(merged.values(), key=lambda r: as_datetime(r.get("send_at")), reverse=True)


class MergedSubscriptionAggregator:
    """Combine two live streams into one ordered, de-duplicated view.

    Nothing is emitted until both streams delivered their first snapshot;
    after that every update from either stream re-emits the merged view.
    """

    def __init__(self, on_rows: SnapshotCallback, on_error: Optional[ErrorCallback] = None, name: str = "member"):
        self.name = name
        self._on_rows = on_rows
        self._on_error = on_error
        self._rows: Dict[str, Rows] = {BROADCAST: [], INBOX: []}
        self._ready: Dict[str, bool] = {BROADCAST: False, INBOX: False}
        self._subscriptions: List[Any] = []
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def ready(self) -> bool:
        return all(self._ready.values())

    def start(self, open_broadcast: StreamOpener, open_inbox: StreamOpener) -> "MergedSubscriptionAggregator":
        self._subscriptions = [
            open_broadcast(self._snapshot_handler(BROADCAST), self._error_handler(BROADCAST)),
            open_inbox(self._snapshot_handler(INBOX), self._error_handler(INBOX)),
        ]
        logger.info(f"Merged subscription {self.name} started")
        return self

    async def cancel(self) -> None:
        self._closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        await asyncio.gather(*(s.cancel() for s in subscriptions))
        logger.info(f"Merged subscription {self.name} cancelled")

    def _snapshot_handler(self, stream: str) -> SnapshotCallback:
        async def handler(rows: Rows) -> None:
            await self._update(stream, rows)
        return handler

    def _error_handler(self, stream: str) -> ErrorCallback:
        async def handler(exc: BaseException) -> None:
            await self._stream_failed(stream, exc)
        return handler

    async def _update(self, stream: str, rows: Rows) -> None:
        async with self._lock:
            if self._closed:
                return
            self._rows[stream] = list(rows)
            self._ready[stream] = True
            if not self.ready:
                return
            merged = merge_rows(self._rows[BROADCAST], self._rows[INBOX])
            await call_maybe_async(self._on_rows, merged)

    async def _stream_failed(self, stream: str, exc: BaseException) -> None:
        if self._closed:
            return
        if is_permission_error(exc):
            # a denied stream counts as an empty one so the other keeps flowing
            logger.warning(f"{self.name}: {stream} stream denied, continuing without it")
            await self._update(stream, [])
            if stream == INBOX and self._on_error is not None:
                await call_maybe_async(self._on_error, exc)
            return
        logger.error(f"{self.name}: {stream} stream failed: {exc}")
        if self._on_error is not None:
            await call_maybe_async(self._on_error, exc)
