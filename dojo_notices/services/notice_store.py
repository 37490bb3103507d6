"""
Document store access for notices, inbox projections and member records

Every document is keyed by its logical path, for example
``dojos/{dojo_id}/members/{uid}/noticeInbox/{notice_id}``, so the
(member, notice) pair can only ever map to one inbox document and change
streams can be filtered by path prefix.
"""
import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import DESCENDING, DeleteOne, UpdateOne
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from dojo_notices.core.errors import PermissionDenied, StoreError, StoreUnavailable
from dojo_notices.db.database import Collections, get_client, get_database
from dojo_notices.models.notice import (
    AudienceType,
    MemberPlaceholder,
    Notice,
    utcnow,
)
from dojo_notices.services.delivery_window import DELIVERABLE_STATUSES, EPOCH

logger = logging.getLogger(__name__)

UNAUTHORIZED_CODES = {13}

UPSERT = "upsert"
DELETE = "delete"


def notice_path(dojo_id: str, notice_id: str) -> str:
    return f"dojos/{dojo_id}/notices/{notice_id}"


def notices_prefix(dojo_id: str) -> str:
    return f"dojos/{dojo_id}/notices/"


def member_path(dojo_id: str, member_uid: str) -> str:
    return f"dojos/{dojo_id}/members/{member_uid}"


def inbox_prefix(dojo_id: str, member_uid: str) -> str:
    return f"{member_path(dojo_id, member_uid)}/noticeInbox/"


def inbox_path(dojo_id: str, member_uid: str, notice_id: str) -> str:
    return f"{inbox_prefix(dojo_id, member_uid)}{notice_id}"


@dataclass
class InboxWrite:
    """One write against a member's inbox projection.

    ``upsert`` is a create-or-merge: mirrored fields are overwritten,
    ``created_at`` is only set when the document did not exist yet.
    """

    op: str
    dojo_id: str
    member_uid: str
    notice_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return inbox_path(self.dojo_id, self.member_uid, self.notice_id)


def is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionDenied):
        return True
    if isinstance(exc, OperationFailure):
        return exc.code in UNAUTHORIZED_CODES or "not authorized" in str(exc).lower()
    return False


@contextmanager
def translate_errors(action: str):
    """Map driver errors onto the notices error taxonomy."""
    try:
        yield
    except OperationFailure as e:
        if is_permission_error(e):
            raise PermissionDenied(f"{action}: {e}") from e
        raise StoreError(f"{action}: {e}") from e
    except ConnectionFailure as e:
        raise StoreUnavailable(f"{action}: {e}") from e
    except PyMongoError as e:
        raise StoreError(f"{action}: {e}") from e


def upsert_update(fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Create-or-merge update document for inbox projections."""
    return {
        "$set": {**fields, "updated_at": now},
        "$setOnInsert": {"created_at": now},
    }


def window_filter(cutoff: datetime) -> Dict[str, Any]:
    return {
        "status": {"$in": list(DELIVERABLE_STATUSES)},
        "send_at": {"$gte": EPOCH, "$lte": cutoff},
    }


def broadcast_filter(dojo_id: str, cutoff: datetime) -> Dict[str, Any]:
    return {"dojo_id": dojo_id, "audience_type": AudienceType.ALL.value, **window_filter(cutoff)}


def inbox_filter(dojo_id: str, member_uid: str, cutoff: datetime) -> Dict[str, Any]:
    return {"dojo_id": dojo_id, "member_uid": member_uid, **window_filter(cutoff)}


def prefix_pipeline(prefix: str) -> List[Dict[str, Any]]:
    return [{"$match": {"documentKey._id": {"$regex": f"^{re.escape(prefix)}"}}}]


class NoticeStore(ABC):
    """Operations the notices subsystem needs from the document store"""

    @abstractmethod
    async def put_notice(self, notice: Notice) -> None:
        """Create or merge the anchor notice document."""

    @abstractmethod
    async def get_notice(self, dojo_id: str, notice_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update_notice(self, dojo_id: str, notice_id: str, fields: Dict[str, Any]) -> bool:
        """Merge ``fields`` into an existing notice. Returns False if it does not exist."""

    @abstractmethod
    async def list_notices(self, dojo_id: str, limit: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def ensure_members(self, dojo_id: str, member_uids: List[str]) -> List[str]:
        """Create pending placeholders for missing members; returns the uids created."""

    @abstractmethod
    async def commit_batch(self, writes: List[InboxWrite]) -> None:
        """Apply all writes atomically, or none of them."""

    @abstractmethod
    async def apply_write(self, write: InboxWrite) -> None:
        """Apply a single idempotent write."""

    @abstractmethod
    async def get_inbox_entry(self, dojo_id: str, member_uid: str, notice_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query_broadcast(self, dojo_id: str, cutoff: datetime, limit: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query_inbox(self, dojo_id: str, member_uid: str, cutoff: datetime, limit: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def watch_notices(self, dojo_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Open a change feed for every notice of a dojo.

        Changes committed after this returns must be delivered by the feed.
        """

    @abstractmethod
    async def watch_inbox(self, dojo_id: str, member_uid: str) -> AsyncIterator[Dict[str, Any]]:
        """Open a change feed for one member's inbox."""


class MotorNoticeStore(NoticeStore):
    """NoticeStore backed by MongoDB.

    Batches run inside a multi-document transaction and live queries use
    change streams, so the deployment must be a replica set.
    """

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None, client: Optional[AsyncIOMotorClient] = None):
        self.db = database
        self.client = client

    async def _get_database(self) -> AsyncIOMotorDatabase:
        if self.db is None:
            self.db = await get_database()
        return self.db

    def _get_client(self) -> AsyncIOMotorClient:
        if self.client is None:
            self.client = get_client()
        return self.client

    async def _collection(self, name: str):
        db = await self._get_database()
        return db[name]

    def _to_request(self, write: InboxWrite, now: datetime):
        if write.op == DELETE:
            return DeleteOne({"_id": write.path})
        fields = {**write.fields, "dojo_id": write.dojo_id, "member_uid": write.member_uid, "notice_id": write.notice_id}
        return UpdateOne({"_id": write.path}, upsert_update(fields, now), upsert=True)

    async def put_notice(self, notice: Notice) -> None:
        coll = await self._collection(Collections.NOTICES)
        doc = notice.to_document()
        created_at = doc.pop("created_at")
        with translate_errors("put_notice"):
            await coll.update_one(
                {"_id": notice_path(notice.dojo_id, notice.notice_id)},
                {"$set": doc, "$setOnInsert": {"created_at": created_at}},
                upsert=True,
            )

    async def get_notice(self, dojo_id: str, notice_id: str) -> Optional[Dict[str, Any]]:
        coll = await self._collection(Collections.NOTICES)
        with translate_errors("get_notice"):
            return await coll.find_one({"_id": notice_path(dojo_id, notice_id)}, {"_id": 0})

    async def update_notice(self, dojo_id: str, notice_id: str, fields: Dict[str, Any]) -> bool:
        coll = await self._collection(Collections.NOTICES)
        with translate_errors("update_notice"):
            result = await coll.update_one({"_id": notice_path(dojo_id, notice_id)}, {"$set": fields})
        return result.matched_count > 0

    async def list_notices(self, dojo_id: str, limit: int) -> List[Dict[str, Any]]:
        coll = await self._collection(Collections.NOTICES)
        with translate_errors("list_notices"):
            cursor = coll.find({"dojo_id": dojo_id}, {"_id": 0}).sort("end_time", DESCENDING).limit(limit)
            return [doc async for doc in cursor]

    async def ensure_members(self, dojo_id: str, member_uids: List[str]) -> List[str]:
        if not member_uids:
            return []
        coll = await self._collection(Collections.MEMBERS)
        requests = []
        for uid in member_uids:
            placeholder = MemberPlaceholder(uid=uid, dojo_id=dojo_id).model_dump()
            requests.append(UpdateOne({"_id": member_path(dojo_id, uid)}, {"$setOnInsert": placeholder}, upsert=True))
        with translate_errors("ensure_members"):
            result = await coll.bulk_write(requests, ordered=False)
        return [member_uids[i] for i in sorted(result.upserted_ids)]

    async def commit_batch(self, writes: List[InboxWrite]) -> None:
        if not writes:
            return
        coll = await self._collection(Collections.NOTICE_INBOX)
        now = utcnow()
        requests = [self._to_request(w, now) for w in writes]

        async def _apply(session):
            await coll.bulk_write(requests, ordered=True, session=session)

        with translate_errors("commit_batch"):
            async with await self._get_client().start_session() as session:
                await session.with_transaction(_apply)

    async def apply_write(self, write: InboxWrite) -> None:
        coll = await self._collection(Collections.NOTICE_INBOX)
        request = self._to_request(write, utcnow())
        with translate_errors("apply_write"):
            await coll.bulk_write([request])

    async def get_inbox_entry(self, dojo_id: str, member_uid: str, notice_id: str) -> Optional[Dict[str, Any]]:
        coll = await self._collection(Collections.NOTICE_INBOX)
        with translate_errors("get_inbox_entry"):
            return await coll.find_one({"_id": inbox_path(dojo_id, member_uid, notice_id)}, {"_id": 0})

    async def query_broadcast(self, dojo_id: str, cutoff: datetime, limit: int) -> List[Dict[str, Any]]:
        coll = await self._collection(Collections.NOTICES)
        with translate_errors("query_broadcast"):
            cursor = coll.find(broadcast_filter(dojo_id, cutoff), {"_id": 0}).sort("send_at", DESCENDING).limit(limit)
            return [doc async for doc in cursor]

    async def query_inbox(self, dojo_id: str, member_uid: str, cutoff: datetime, limit: int) -> List[Dict[str, Any]]:
        coll = await self._collection(Collections.NOTICE_INBOX)
        with translate_errors("query_inbox"):
            cursor = coll.find(inbox_filter(dojo_id, member_uid, cutoff), {"_id": 0}).sort("send_at", DESCENDING).limit(limit)
            return [doc async for doc in cursor]

    async def _watch(self, collection_name: str, prefix: str) -> "ChangeFeed":
        coll = await self._collection(collection_name)
        stream = coll.watch(prefix_pipeline(prefix))
        with translate_errors(f"watch {prefix}"):
            # watch() is lazy; try_next() runs the aggregate that opens the stream
            first = await stream.try_next()
        return ChangeFeed(stream, first, prefix)

    async def watch_notices(self, dojo_id: str) -> "ChangeFeed":
        return await self._watch(Collections.NOTICES, notices_prefix(dojo_id))

    async def watch_inbox(self, dojo_id: str, member_uid: str) -> "ChangeFeed":
        return await self._watch(Collections.NOTICE_INBOX, inbox_prefix(dojo_id, member_uid))


class ChangeFeed:
    """An opened change stream. A change read while opening is replayed first."""

    def __init__(self, stream, first: Optional[Dict[str, Any]] = None, prefix: str = ""):
        self._stream = stream
        self._pending = first
        self.prefix = prefix

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self._pending is not None:
            change, self._pending = self._pending, None
            return change
        with translate_errors(f"watch {self.prefix}"):
            return await self._stream.next()

    async def aclose(self) -> None:
        await self._stream.close()
