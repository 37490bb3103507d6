"""
Direct notice reads with a fallback to the member's inbox projection
"""
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from dojo_notices.core.errors import DeliveryUnavailable, NotFound
from dojo_notices.models.notice import MIRRORED_FIELDS, AudienceType, InboxEntry, NoticeView
from dojo_notices.services.notice_store import NoticeStore, is_permission_error

logger = logging.getLogger(__name__)

_VIEW_FIELDS = set(NoticeView.model_fields) - {"id", "source", "degraded"}


def full_view(doc: Dict[str, Any]) -> NoticeView:
    data = {k: v for k, v in doc.items() if k in _VIEW_FIELDS}
    return NoticeView(id=doc.get("notice_id") or doc.get("id"), source="notices", degraded=False, **data)


def degraded_view(notice_id: str, entry: Dict[str, Any]) -> NoticeView:
    """Summary view built from an inbox projection; body and attachments are absent."""
    projection = InboxEntry.model_validate({"notice_id": notice_id, **entry})
    data = projection.model_dump(include=set(MIRRORED_FIELDS))
    return NoticeView(
        id=projection.notice_id,
        dojo_id=projection.dojo_id,
        audience_type=AudienceType.UIDS,
        audience_uids=[],
        attachments=[],
        created_at=projection.created_at,
        updated_at=projection.updated_at,
        source="inbox",
        degraded=True,
        **data,
    )


async def read_notice(store: NoticeStore, dojo_id: str, notice_id: str, member_uid: Optional[str] = None) -> NoticeView:
    """Read a notice; on an authorization error fall back to the reader's inbox.

    Raises NotFound when the notice genuinely does not exist and
    DeliveryUnavailable when the direct read was denied and the fallback
    could not produce a view.
    """
    try:
        doc = await store.get_notice(dojo_id, notice_id)
    except Exception as e:
        if not is_permission_error(e):
            raise
        logger.info(f"Read of notice {notice_id} denied, trying inbox of {member_uid or '<anonymous>'}")
        return await _read_inbox(store, dojo_id, notice_id, member_uid, e)

    if doc is None:
        raise NotFound(f"Notice {notice_id} not found in dojo {dojo_id}")
    return full_view(doc)


async def _read_inbox(store: NoticeStore, dojo_id: str, notice_id: str, member_uid: Optional[str], denied: Exception) -> NoticeView:
    if not member_uid:
        raise DeliveryUnavailable(f"Notice {notice_id} is not readable and no member was given") from denied
    try:
        entry = await store.get_inbox_entry(dojo_id, member_uid, notice_id)
    except Exception as e:
        logger.warning(f"Inbox fallback for notice {notice_id} / member {member_uid} failed: {e}")
        raise DeliveryUnavailable(f"Notice {notice_id} could not be loaded") from e
    if entry is None:
        raise DeliveryUnavailable(f"Notice {notice_id} is no longer available to member {member_uid}") from denied
    try:
        return degraded_view(notice_id, entry)
    except ValidationError as e:
        logger.error(f"Inbox entry of notice {notice_id} for member {member_uid} is malformed: {e}")
        raise DeliveryUnavailable(f"Notice {notice_id} could not be loaded") from e
