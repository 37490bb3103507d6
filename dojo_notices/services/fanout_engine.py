"""
Fan-out of targeted notices into per-member inbox projections

The Notice document is the transactional anchor: failing to write it is an
error for the caller. Inbox projections are written around it on a
best-effort basis. Recipients are split into chunks of at most
``batch_size`` writes, each chunk committed atomically. When a chunk fails
every member in it is retried with single idempotent writes, a bounded
number of times, and ends up in either ``succeeded`` or ``failed``.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from dojo_notices.core.config import settings
from dojo_notices.models.notice import (
    AudienceType,
    FanoutResult,
    InboxEntry,
    Notice,
    PartialFanoutFailure,
    PublishResult,
    ReconcileResult,
)
from dojo_notices.services.audience_resolver import normalize_uids
from dojo_notices.services.notice_store import DELETE, UPSERT, InboxWrite, NoticeStore

logger = logging.getLogger(__name__)


def chunked(items: List, size: int) -> List[List]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def partial_failure(notice_id: str, operation: str, *results: FanoutResult) -> Optional[PartialFanoutFailure]:
    failed = [uid for r in results for uid in r.failed]
    if not failed:
        return None
    return PartialFanoutFailure(notice_id=notice_id, operation=operation, failed_uids=failed)


def _targets(notice: Optional[Notice]) -> Optional[List[str]]:
    """Audience uids of a targeted notice, None for anything else."""
    if notice is None or notice.audience_type != AudienceType.UIDS:
        return None
    return normalize_uids(notice.audience_uids)


class FanoutEngine:
    """Creates, refreshes and removes inbox projections for a notice"""

    def __init__(
        self,
        store: NoticeStore,
        batch_size: int = settings.NOTICE_BATCH_SIZE,
        retry_attempts: int = settings.FANOUT_RETRY_ATTEMPTS,
        retry_backoff: float = settings.FANOUT_RETRY_BACKOFF_SECONDS,
        max_concurrent_batches: int = settings.FANOUT_MAX_CONCURRENT_BATCHES,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.max_concurrent_batches = max(1, max_concurrent_batches)

    async def publish(self, notice: Notice, previous: Optional[Notice] = None) -> PublishResult:
        """Write the notice, then fan it out to its member list.

        ``previous`` is the stored version when an existing notice id is
        republished; members it targeted that are no longer in the audience
        lose their inbox entry.
        """
        await self.store.put_notice(notice)
        logger.info(f"Published notice {notice.notice_id} in dojo {notice.dojo_id}")

        result = PublishResult(notice_id=notice.notice_id)
        uids = _targets(notice)
        keep = set(uids or [])
        stale = [u for u in (_targets(previous) or []) if u not in keep]
        if not uids and not stale:
            return result

        if stale:
            try:
                result.removed = await self.remove(notice.dojo_id, notice.notice_id, stale)
            except Exception as e:
                logger.error(f"Removing stale entries of notice {notice.notice_id} failed: {e}")
                result.removed = FanoutResult(failed=stale)

        if uids:
            logger.info(f"Fanning out notice {notice.notice_id} to {len(uids)} members")
            try:
                result.fanout = await self.fan_out(notice, uids)
            except Exception as e:
                # the notice stays published; the whole audience is left for a retry
                logger.error(f"Fan-out of notice {notice.notice_id} failed completely: {e}")
                result.fanout = FanoutResult(failed=list(uids))

        result.partial_failure = partial_failure(notice.notice_id, "publish", result.fanout, result.removed)
        await self._record(notice, len(result.fanout.succeeded), result.fanout.failed + result.removed.failed)
        return result

    async def reconcile(self, before: Optional[Notice], after: Notice) -> ReconcileResult:
        """Bring inbox projections in line with an updated notice.

        Safe to repeat: projections are keyed on (member, notice), so running
        the same reconcile twice ends in the same state.
        """
        before_uids = _targets(before)
        after_uids = _targets(after)
        transition = f"{'uids' if before_uids is not None else 'all'}->{'uids' if after_uids is not None else 'all'}"
        result = ReconcileResult(notice_id=after.notice_id, transition=transition)

        if before_uids is not None and after_uids is not None:
            keep = set(after_uids)
            removed = [u for u in before_uids if u not in keep]
            if removed:
                result.removed = await self.remove(after.dojo_id, after.notice_id, removed)
            # added and unchanged members are both refreshed with an upsert
            if after_uids:
                result.upserted = await self.fan_out(after, after_uids)
        elif after_uids is not None:
            if after_uids:
                result.upserted = await self.fan_out(after, after_uids)
        elif before_uids is not None:
            if before_uids:
                result.removed = await self.remove(after.dojo_id, after.notice_id, before_uids)

        result.partial_failure = partial_failure(after.notice_id, "reconcile", result.upserted, result.removed)
        if before_uids is not None or after_uids is not None:
            await self._record(after, len(result.upserted.succeeded), result.upserted.failed + result.removed.failed)

        logger.info(
            f"Reconciled notice {after.notice_id} ({transition}): "
            f"{len(result.upserted.succeeded)} upserted, {len(result.removed.succeeded)} removed, "
            f"{len(result.upserted.failed) + len(result.removed.failed)} failed"
        )
        return result

    async def retry(self, notice: Notice) -> ReconcileResult:
        """Re-run the writes that failed last time.

        Failed members still in the audience get their projection upserted,
        the others get it deleted.
        """
        result = ReconcileResult(notice_id=notice.notice_id, transition="retry")
        pending = normalize_uids(notice.fanout_failed_uids)
        if not pending:
            return result

        audience = set(_targets(notice) or [])
        upserts = [u for u in pending if u in audience]
        deletes = [u for u in pending if u not in audience]
        if upserts:
            result.upserted = await self.fan_out(notice, upserts)
        if deletes:
            result.removed = await self.remove(notice.dojo_id, notice.notice_id, deletes)

        result.partial_failure = partial_failure(notice.notice_id, "retry", result.upserted, result.removed)
        succeeded = (notice.fanout_succeeded or 0) + len(result.upserted.succeeded)
        await self._record(notice, succeeded, result.upserted.failed + result.removed.failed)
        return result

    async def fan_out(self, notice: Notice, member_uids: Iterable[str]) -> FanoutResult:
        """Upsert one inbox projection per member."""
        uids = normalize_uids(member_uids)
        if not uids:
            return FanoutResult()

        placeholders = await self.ensure_members(notice.dojo_id, uids)
        fields = InboxEntry.mirror_fields(notice)
        writes = [InboxWrite(UPSERT, notice.dojo_id, uid, notice.notice_id, fields) for uid in uids]
        result = await self._write_all(writes, f"fanout {notice.notice_id}")
        result.placeholders_created = placeholders
        return result

    async def remove(self, dojo_id: str, notice_id: str, member_uids: Iterable[str]) -> FanoutResult:
        """Delete the inbox projections of a notice for the given members."""
        uids = normalize_uids(member_uids)
        if not uids:
            return FanoutResult()
        writes = [InboxWrite(DELETE, dojo_id, uid, notice_id) for uid in uids]
        return await self._write_all(writes, f"remove {notice_id}")

    async def ensure_members(self, dojo_id: str, member_uids: List[str]) -> List[str]:
        """Create pending placeholder records for members that do not exist yet."""
        created: List[str] = []
        for part in chunked(member_uids, self.batch_size):
            try:
                created.extend(await self.store.ensure_members(dojo_id, part))
            except Exception as e:
                logger.error(f"Failed to ensure member records in dojo {dojo_id}: {e}")
        if created:
            logger.warning(f"Created {len(created)} pending member placeholders in dojo {dojo_id}")
        return created

    async def _write_all(self, writes: List[InboxWrite], label: str) -> FanoutResult:
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        async def run(part: List[InboxWrite]) -> FanoutResult:
            async with semaphore:
                return await self._commit_chunk(part, label)

        total = FanoutResult()
        for chunk_result in await asyncio.gather(*(run(p) for p in chunked(writes, self.batch_size))):
            total.extend(chunk_result)
        if total.failed:
            logger.warning(f"{label}: {len(total.succeeded)} succeeded, {len(total.failed)} failed")
        return total

    async def _commit_chunk(self, part: List[InboxWrite], label: str) -> FanoutResult:
        try:
            await self.store.commit_batch(part)
            logger.debug(f"{label}: batch of {len(part)} committed")
            return FanoutResult(succeeded=[w.member_uid for w in part])
        except Exception as e:
            logger.error(f"{label}: batch of {len(part)} failed, retrying individually: {e}")

        result = FanoutResult()
        for write in part:
            if await self._retry_write(write, label):
                result.succeeded.append(write.member_uid)
            else:
                result.failed.append(write.member_uid)
        return result

    async def _retry_write(self, write: InboxWrite, label: str) -> bool:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await self.store.apply_write(write)
                return True
            except Exception as e:
                logger.warning(f"{label}: {write.op} for {write.member_uid} failed (attempt {attempt}/{self.retry_attempts}): {e}")
                if attempt < self.retry_attempts and self.retry_backoff > 0:
                    await asyncio.sleep(self.retry_backoff * 2 ** (attempt - 1))
        return False

    async def _record(self, notice: Notice, succeeded: int, failed: List[str]) -> None:
        """Annotate the notice with fan-out counts. Never raises."""
        fields: Dict[str, object] = {
            "fanout_succeeded": succeeded,
            "fanout_failed": len(failed),
            "fanout_failed_uids": list(failed),
        }
        try:
            await self.store.update_notice(notice.dojo_id, notice.notice_id, fields)
        except Exception as e:
            logger.warning(f"Could not record fan-out status on notice {notice.notice_id}: {e}")
