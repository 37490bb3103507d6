"""Pytest configuration and in-memory store for notice tests."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from dojo_notices.core.errors import PermissionDenied, StoreError, StoreUnavailable
from dojo_notices.models.notice import MemberPlaceholder, Notice, utcnow
from dojo_notices.services.delivery_window import as_datetime, is_deliverable
from dojo_notices.services.fanout_engine import FanoutEngine
from dojo_notices.services.notice_service import NoticeService
from dojo_notices.services.notice_store import (
    DELETE,
    InboxWrite,
    NoticeStore,
    inbox_path,
    inbox_prefix,
    member_path,
    notice_path,
    notices_prefix,
)

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
DOJO = "dojo-1"


class MemoryChangeFeed:
    """Change feed registered on creation, like an opened change stream."""

    def __init__(self, store: "InMemoryNoticeStore", prefix: str):
        self.store = store
        self.prefix = prefix
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        store.feeds.append(self)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        change = await self.queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def aclose(self):
        self.closed = True
        if self in self.store.feeds:
            self.store.feeds.remove(self)


class InMemoryNoticeStore(NoticeStore):
    """NoticeStore double with fault injection."""

    def __init__(self):
        self.notices: Dict[str, Dict[str, Any]] = {}
        self.inbox: Dict[str, Dict[str, Any]] = {}
        self.members: Dict[str, Dict[str, Any]] = {}
        self.feeds: List[MemoryChangeFeed] = []

        self.fail_batch: Optional[Callable[[List[InboxWrite]], bool]] = None
        self.failing_single_uids: Set[str] = set()
        self.deny_notice_reads = False
        self.deny_inbox_reads = False
        self.deny_broadcast_query = False
        self.unavailable = False
        self.fail_notice_updates = False
        self.feed_open_delay = 0.0

        self.batch_sizes: List[int] = []
        self.single_writes: List[str] = []

    # helpers

    def _notify(self, path: str) -> None:
        for feed in list(self.feeds):
            if path.startswith(feed.prefix):
                feed.queue.put_nowait({"documentKey": {"_id": path}})

    def _check_available(self) -> None:
        if self.unavailable:
            raise StoreUnavailable("simulated outage")

    def _apply(self, write: InboxWrite) -> None:
        path = write.path
        if write.op == DELETE:
            if self.inbox.pop(path, None) is not None:
                self._notify(path)
            return
        now = utcnow()
        doc = self.inbox.get(path)
        if doc is None:
            doc = {"created_at": now}
            self.inbox[path] = doc
        doc.update(copy.deepcopy(write.fields))
        doc.update(dojo_id=write.dojo_id, member_uid=write.member_uid, notice_id=write.notice_id, updated_at=now)
        self._notify(path)

    def inbox_entries(self, dojo_id: str, notice_id: str) -> Dict[str, Dict[str, Any]]:
        return {
            doc["member_uid"]: doc
            for doc in self.inbox.values()
            if doc["dojo_id"] == dojo_id and doc["notice_id"] == notice_id
        }

    def seed_notice(self, **fields) -> Dict[str, Any]:
        doc = {
            "dojo_id": DOJO,
            "type": "notice",
            "body": "",
            "audience_type": "all",
            "audience_uids": [],
            "start_time": NOW - timedelta(days=1),
            "end_time": NOW + timedelta(days=29),
            "send_at": NOW - timedelta(hours=1),
            "status": "sent",
            "attachments": [],
            "created_by": "staff-1",
            "created_at": NOW - timedelta(days=1),
            "updated_at": NOW - timedelta(days=1),
        }
        doc.update(fields)
        self.notices[notice_path(doc["dojo_id"], doc["notice_id"])] = doc
        self._notify(notice_path(doc["dojo_id"], doc["notice_id"]))
        return doc

    # NoticeStore

    async def put_notice(self, notice: Notice) -> None:
        self._check_available()
        path = notice_path(notice.dojo_id, notice.notice_id)
        doc = notice.to_document()
        existing = self.notices.get(path)
        if existing is not None:
            doc["created_at"] = existing["created_at"]
        self.notices[path] = doc
        self._notify(path)

    async def get_notice(self, dojo_id, notice_id):
        self._check_available()
        if self.deny_notice_reads:
            raise PermissionDenied("Missing or insufficient permissions")
        doc = self.notices.get(notice_path(dojo_id, notice_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def update_notice(self, dojo_id, notice_id, fields):
        self._check_available()
        if self.fail_notice_updates:
            raise StoreError("simulated update fault")
        path = notice_path(dojo_id, notice_id)
        doc = self.notices.get(path)
        if doc is None:
            return False
        doc.update(copy.deepcopy(fields))
        self._notify(path)
        return True

    async def list_notices(self, dojo_id, limit):
        docs = [d for d in self.notices.values() if d["dojo_id"] == dojo_id]
        docs.sort(key=lambda d: as_datetime(d.get("end_time")), reverse=True)
        return copy.deepcopy(docs[:limit])

    async def ensure_members(self, dojo_id, member_uids):
        self._check_available()
        created = []
        for uid in member_uids:
            path = member_path(dojo_id, uid)
            if path not in self.members:
                self.members[path] = MemberPlaceholder(uid=uid, dojo_id=dojo_id).model_dump()
                created.append(uid)
        return created

    async def commit_batch(self, writes):
        self._check_available()
        self.batch_sizes.append(len(writes))
        if self.fail_batch is not None and self.fail_batch(writes):
            raise StoreError("simulated batch fault")
        for write in writes:
            self._apply(write)

    async def apply_write(self, write):
        self._check_available()
        self.single_writes.append(write.member_uid)
        if write.member_uid in self.failing_single_uids:
            raise StoreError(f"simulated write fault for {write.member_uid}")
        self._apply(write)

    async def get_inbox_entry(self, dojo_id, member_uid, notice_id):
        self._check_available()
        if self.deny_inbox_reads:
            raise PermissionDenied("Missing or insufficient permissions")
        doc = self.inbox.get(inbox_path(dojo_id, member_uid, notice_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def query_broadcast(self, dojo_id, cutoff, limit):
        if self.deny_broadcast_query:
            raise PermissionDenied("Missing or insufficient permissions")
        docs = [
            d for d in self.notices.values()
            if d["dojo_id"] == dojo_id and d["audience_type"] == "all"
            and is_deliverable(d["status"], d["send_at"], cutoff)
        ]
        docs.sort(key=lambda d: as_datetime(d["send_at"]), reverse=True)
        return copy.deepcopy(docs[:limit])

    async def query_inbox(self, dojo_id, member_uid, cutoff, limit):
        docs = [
            d for d in self.inbox.values()
            if d["dojo_id"] == dojo_id and d["member_uid"] == member_uid
            and is_deliverable(d["status"], d["send_at"], cutoff)
        ]
        docs.sort(key=lambda d: as_datetime(d["send_at"]), reverse=True)
        return copy.deepcopy(docs[:limit])

    async def _open_feed(self, prefix: str) -> MemoryChangeFeed:
        # a slow open models the round trip that establishes a change stream
        if self.feed_open_delay:
            await asyncio.sleep(self.feed_open_delay)
        return MemoryChangeFeed(self, prefix)

    async def watch_notices(self, dojo_id):
        return await self._open_feed(notices_prefix(dojo_id))

    async def watch_inbox(self, dojo_id, member_uid):
        return await self._open_feed(inbox_prefix(dojo_id, member_uid))


class SnapshotCollector:
    """Records snapshots and errors delivered to a subscription callback."""

    def __init__(self):
        self.snapshots: List[List[dict]] = []
        self.errors: List[BaseException] = []

    def __call__(self, rows):
        self.snapshots.append(rows)

    def on_error(self, exc):
        self.errors.append(exc)

    @property
    def latest_ids(self) -> List[str]:
        return [r["id"] for r in self.snapshots[-1]] if self.snapshots else []

    async def wait_for(self, predicate, timeout: float = 2.0):
        async def _poll():
            while not (self.snapshots and predicate(self.snapshots[-1])):
                await asyncio.sleep(0.01)
            return self.snapshots[-1]

        return await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def store():
    return InMemoryNoticeStore()


@pytest.fixture
def engine(store):
    return FanoutEngine(store, batch_size=400, retry_attempts=3, retry_backoff=0, max_concurrent_batches=4)


@pytest.fixture
def service(store, engine):
    return NoticeService(store=store, engine=engine, clock=lambda: NOW, refresh_interval=None)


@pytest.fixture
def collector():
    return SnapshotCollector()
