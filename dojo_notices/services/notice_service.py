"""
Notice Service: publish, update, read and subscribe to dojo notices

Staff publish notices to the whole dojo or to an explicit member list.
Targeted notices are fanned out into per-member inbox projections. Members
read through a merged live view of broadcast notices and their own inbox.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional
from datetime import datetime, timedelta
import logging

from bson import ObjectId
from pydantic import ValidationError

from dojo_notices.core.config import settings
from dojo_notices.core.errors import InvalidNotice, NotFound
from dojo_notices.models.notice import (
    Notice,
    NoticeStatus,
    NoticeType,
    NoticeView,
    PublishResult,
    ReconcileResult,
    utcnow,
)
from dojo_notices.services.audience_resolver import resolve_audience
from dojo_notices.services.delivery_window import CLOCK_SKEW, as_datetime, delivery_cutoff, is_deliverable, resolve_schedule
from dojo_notices.services.fanout_engine import FanoutEngine
from dojo_notices.services.live_query import ErrorCallback, LiveQuery, SnapshotCallback
from dojo_notices.services.merged_subscription import MergedSubscriptionAggregator
from dojo_notices.services.notice_store import MotorNoticeStore, NoticeStore
from dojo_notices.services.permission_fallback import read_notice

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "type", "title", "body", "audience_type", "audience_uids",
    "start_time", "end_time", "send_at", "status", "attachments",
}


def to_row(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Store document -> row keyed by notice id."""
    row = {k: v for k, v in doc.items() if k != "_id"}
    row["id"] = doc.get("notice_id") or doc.get("id")
    return row


def _check_window(start: datetime, end: datetime) -> None:
    if end < start:
        raise InvalidNotice("end_time must not be before start_time")


class NoticeService:
    """Entry point used by the API layer"""

    def __init__(
        self,
        store: Optional[NoticeStore] = None,
        engine: Optional[FanoutEngine] = None,
        clock: Callable[[], datetime] = utcnow,
        skew: timedelta = CLOCK_SKEW,
        member_limit: int = settings.NOTICE_MEMBER_LIMIT,
        staff_limit: int = settings.NOTICE_STAFF_LIMIT,
        refresh_interval: Optional[float] = settings.NOTICE_WINDOW_REFRESH_SECONDS,
    ):
        self.store = store or MotorNoticeStore()
        self.engine = engine or FanoutEngine(self.store)
        self.clock = clock
        self.skew = skew
        self.member_limit = member_limit
        self.staff_limit = staff_limit
        self.refresh_interval = refresh_interval

    # -- staff operations ------------------------------------------------

    async def publish_notice(
        self,
        dojo_id: str,
        *,
        title: str,
        created_by: str = "",
        type: str = NoticeType.NOTICE.value,
        body: Optional[str] = None,
        audience_type: str = "all",
        audience_uids: Optional[Iterable[str]] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        send_at: Optional[datetime] = None,
        status: str = NoticeStatus.DRAFT.value,
        attachments: Optional[List[Any]] = None,
        notice_id: Optional[str] = None,
    ) -> PublishResult:
        """Validate, write and fan out a new notice.

        Passing an existing ``notice_id`` republishes it; inbox projections
        are keyed per (member, notice) so nothing is duplicated, and members
        dropped from the audience lose their entry.
        """
        if not str(dojo_id or "").strip():
            raise InvalidNotice("dojo_id is required")
        title = str(title or "").strip()
        if not title:
            raise InvalidNotice("title must not be empty")

        audience = resolve_audience(audience_type, audience_uids)
        now = self.clock()
        start, end, send = resolve_schedule(start_time, end_time, send_at, now=now)
        _check_window(start, end)

        try:
            notice = Notice(
                notice_id=notice_id or str(ObjectId()),
                dojo_id=dojo_id,
                type=type,
                title=title,
                body=str(body or "").strip(),
                audience_type=audience.audience_type,
                audience_uids=audience.audience_uids,
                start_time=start,
                end_time=end,
                send_at=send,
                status=status,
                attachments=attachments or [],
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidNotice(str(e)) from e

        previous = None
        if notice_id:
            previous_doc = await self.store.get_notice(dojo_id, notice_id)
            if previous_doc is not None:
                previous = Notice.from_document(previous_doc)

        result = await self.engine.publish(notice, previous)
        if result.partial_failure:
            logger.warning(
                f"Notice {notice.notice_id} published but {len(result.partial_failure.failed_uids)} "
                f"inbox entries are missing"
            )
        return result

    async def update_notice(self, dojo_id: str, notice_id: str, patch: Dict[str, Any]) -> ReconcileResult:
        """Apply a patch to a notice and reconcile its inbox projections."""
        unknown = set(patch) - EDITABLE_FIELDS
        if unknown:
            raise InvalidNotice(f"Fields cannot be updated: {sorted(unknown)}")

        before_doc = await self.store.get_notice(dojo_id, notice_id)
        if before_doc is None:
            raise NotFound(f"Notice {notice_id} not found in dojo {dojo_id}")
        before = Notice.from_document(before_doc)

        changes = dict(patch)
        if "title" in changes:
            changes["title"] = str(changes["title"] or "").strip()
            if not changes["title"]:
                raise InvalidNotice("title must not be empty")
        if "body" in changes:
            changes["body"] = str(changes["body"] or "").strip()
        if "audience_type" in changes or "audience_uids" in changes:
            audience = resolve_audience(
                changes.get("audience_type", before.audience_type),
                changes.get("audience_uids", before.audience_uids),
            )
            changes["audience_type"] = audience.audience_type
            changes["audience_uids"] = audience.audience_uids
        for key in ("start_time", "end_time", "send_at"):
            if changes.get(key) is not None:
                changes[key] = as_datetime(changes[key])
            elif key in changes:
                del changes[key]
        changes["updated_at"] = self.clock()

        try:
            candidate = Notice(**{**before.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidNotice(str(e)) from e
        _check_window(candidate.start_time, candidate.end_time)

        candidate_doc = candidate.to_document()
        fields = {k: candidate_doc[k] for k in changes if k in candidate_doc}
        if not await self.store.update_notice(dojo_id, notice_id, fields):
            raise NotFound(f"Notice {notice_id} not found in dojo {dojo_id}")

        after_doc = await self.store.get_notice(dojo_id, notice_id)
        after = Notice.from_document(after_doc) if after_doc is not None else candidate
        return await self.engine.reconcile(before, after)

    async def retry_fanout(self, dojo_id: str, notice_id: str) -> ReconcileResult:
        """Retry the inbox writes recorded as failed on the notice."""
        doc = await self.store.get_notice(dojo_id, notice_id)
        if doc is None:
            raise NotFound(f"Notice {notice_id} not found in dojo {dojo_id}")
        return await self.engine.retry(Notice.from_document(doc))

    async def list_notices(self, dojo_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = await self.store.list_notices(dojo_id, limit or self.staff_limit)
        return [to_row(d) for d in docs]

    # -- reads -----------------------------------------------------------

    async def get_notice(self, dojo_id: str, notice_id: str, member_uid: Optional[str] = None) -> NoticeView:
        return await read_notice(self.store, dojo_id, notice_id, member_uid)

    # -- live subscriptions ----------------------------------------------

    def _deliverable_rows(self, docs: List[Dict[str, Any]], cutoff: datetime) -> List[Dict[str, Any]]:
        return [to_row(d) for d in docs if is_deliverable(d.get("status"), d.get("send_at"), cutoff)]

    def subscribe_broadcast(
        self,
        dojo_id: str,
        on_rows: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        limit: Optional[int] = None,
    ) -> LiveQuery:
        """Live deliverable notices addressed to the whole dojo."""
        limit = limit or self.member_limit

        async def fetch():
            cutoff = delivery_cutoff(self.clock(), self.skew)
            return self._deliverable_rows(await self.store.query_broadcast(dojo_id, cutoff, limit), cutoff)

        return LiveQuery(
            f"broadcast:{dojo_id}",
            fetch,
            lambda: self.store.watch_notices(dojo_id),
            on_rows,
            on_error,
            self.refresh_interval,
        ).start()

    def subscribe_inbox(
        self,
        dojo_id: str,
        member_uid: str,
        on_rows: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        limit: Optional[int] = None,
    ) -> LiveQuery:
        """Live deliverable entries of one member's inbox."""
        limit = limit or self.member_limit

        async def fetch():
            cutoff = delivery_cutoff(self.clock(), self.skew)
            return self._deliverable_rows(await self.store.query_inbox(dojo_id, member_uid, cutoff, limit), cutoff)

        return LiveQuery(
            f"inbox:{dojo_id}/{member_uid}",
            fetch,
            lambda: self.store.watch_inbox(dojo_id, member_uid),
            on_rows,
            on_error,
            self.refresh_interval,
        ).start()

    def subscribe_for_member(
        self,
        dojo_id: str,
        member_uid: str,
        on_rows: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        limit: Optional[int] = None,
    ) -> MergedSubscriptionAggregator:
        """Merged live view of everything a member may read."""
        aggregator = MergedSubscriptionAggregator(on_rows, on_error, name=f"{dojo_id}/{member_uid}")
        return aggregator.start(
            lambda cb, err: self.subscribe_broadcast(dojo_id, cb, err, limit),
            lambda cb, err: self.subscribe_inbox(dojo_id, member_uid, cb, err, limit),
        )

    def subscribe_for_staff(
        self,
        dojo_id: str,
        on_rows: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        limit: Optional[int] = None,
    ) -> LiveQuery:
        """Every notice of the dojo, newest end_time first."""
        limit = limit or self.staff_limit

        async def fetch():
            return await self.list_notices(dojo_id, limit)

        return LiveQuery(
            f"staff:{dojo_id}",
            fetch,
            lambda: self.store.watch_notices(dojo_id),
            on_rows,
            on_error,
            self.refresh_interval,
        ).start()
