"""Tests for direct notice reads and the inbox fallback."""

import pytest

from dojo_notices.core.errors import DeliveryUnavailable, NotFound, StoreUnavailable
from dojo_notices.services.permission_fallback import degraded_view, read_notice
from dojo_notices.services.notice_store import UPSERT, InboxWrite, inbox_path

from tests.conftest import DOJO


async def seed_targeted(store):
    notice = store.seed_notice(notice_id="n1", title="Belt test", body="Bring your gi", audience_type="uids", audience_uids=["m1"])
    fields = {k: notice[k] for k in ("type", "title", "status", "start_time", "end_time", "send_at")}
    await store.apply_write(InboxWrite(UPSERT, DOJO, "m1", "n1", fields))
    return notice


async def test_direct_read_returns_full_view(store):
    await seed_targeted(store)

    view = await read_notice(store, DOJO, "n1", "m1")

    assert view.id == "n1"
    assert view.body == "Bring your gi"
    assert view.audience_uids == ["m1"]
    assert view.source == "notices"
    assert not view.degraded


async def test_missing_notice_is_not_found(store):
    with pytest.raises(NotFound):
        await read_notice(store, DOJO, "nope", "m1")


async def test_denied_read_falls_back_to_inbox(store):
    await seed_targeted(store)
    store.deny_notice_reads = True

    view = await read_notice(store, DOJO, "n1", "m1")

    assert view.degraded
    assert view.source == "inbox"
    assert view.title == "Belt test"
    assert view.body is None
    assert view.attachments == []
    assert view.audience_type == "uids"
    assert view.audience_uids == []


async def test_denied_read_without_member_is_unavailable(store):
    await seed_targeted(store)
    store.deny_notice_reads = True

    with pytest.raises(DeliveryUnavailable):
        await read_notice(store, DOJO, "n1")


async def test_denied_read_without_inbox_entry_is_unavailable(store):
    await seed_targeted(store)
    store.deny_notice_reads = True

    with pytest.raises(DeliveryUnavailable):
        await read_notice(store, DOJO, "n1", "m2")


async def test_denied_read_and_denied_inbox_is_unavailable(store):
    await seed_targeted(store)
    store.deny_notice_reads = True
    store.deny_inbox_reads = True

    with pytest.raises(DeliveryUnavailable):
        await read_notice(store, DOJO, "n1", "m1")


async def test_store_outage_is_not_masked(store):
    store.unavailable = True

    with pytest.raises(StoreUnavailable):
        await read_notice(store, DOJO, "n1", "m1")


async def test_malformed_inbox_entry_is_unavailable(store):
    await seed_targeted(store)
    entry = store.inbox[inbox_path(DOJO, "m1", "n1")]
    del entry["title"]
    entry["status"] = "not-a-status"
    store.deny_notice_reads = True

    with pytest.raises(DeliveryUnavailable):
        await read_notice(store, DOJO, "n1", "m1")


def test_degraded_view_validates_the_projection():
    view = degraded_view("n1", {
        "dojo_id": DOJO,
        "member_uid": "m1",
        "type": "memo",
        "title": "Kit order",
        "status": "sent",
        "start_time": "2026-10-16T10:00:00Z",
        "end_time": "2026-11-16T10:00:00Z",
        "send_at": "2026-10-16T10:00:00Z",
    })

    assert view.id == "n1"
    assert view.type == "memo"
    assert view.send_at.tzinfo is not None
    assert view.body is None
