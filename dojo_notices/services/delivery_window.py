"""
Delivery eligibility and display status for notices

Delivery eligibility decides whether a member may see a notice at all.
The UI status (upcoming/active/complete) is a display concern derived from
start/end time and must not be used to gate delivery.
"""
from typing import Any, Optional, Tuple
from datetime import datetime, timedelta, timezone
from dojo_notices.core.config import settings
from dojo_notices.models.notice import NoticeStatus, UiStatus, utcnow

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Stand-in for missing or unparseable instants
MISSING_INSTANT = datetime(1900, 1, 1, tzinfo=timezone.utc)

CLOCK_SKEW = timedelta(seconds=settings.NOTICE_CLOCK_SKEW_SECONDS)
DEFAULT_DURATION = timedelta(days=settings.NOTICE_DEFAULT_DURATION_DAYS)

DELIVERABLE_STATUSES = (NoticeStatus.SENT.value, NoticeStatus.SCHEDULED.value)


def as_datetime(value: Any) -> datetime:
    """Coerce stored instants to aware UTC datetimes."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return as_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return MISSING_INSTANT
    return MISSING_INSTANT


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


def delivery_cutoff(now: Optional[datetime] = None, skew: timedelta = CLOCK_SKEW) -> datetime:
    """Latest send_at a member query may surface, given the wall clock."""
    return as_datetime(now or utcnow()) - skew


def is_deliverable(status: Any, send_at: Any, now: datetime) -> bool:
    """True when the notice is sent/scheduled and send_at is within [EPOCH, now].

    ``now`` is the query reference instant; member queries pass
    ``delivery_cutoff()`` so that clock drift cannot surface a notice early.
    """
    if _status_value(status) not in DELIVERABLE_STATUSES:
        return False
    ts = as_datetime(send_at)
    return EPOCH <= ts <= as_datetime(now)


def ui_status(start_time: Any, end_time: Any, status: Any, now: Optional[datetime] = None) -> UiStatus:
    now = as_datetime(now or utcnow())
    start = as_datetime(start_time)
    end = as_datetime(end_time)

    if now < start:
        return UiStatus.UPCOMING
    if start <= now <= end and _status_value(status) in DELIVERABLE_STATUSES:
        return UiStatus.ACTIVE
    return UiStatus.COMPLETE


def resolve_schedule(
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    send_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime, datetime]:
    """Fill in the default window: start=now, end=start+30d, send_at=start."""
    start = as_datetime(start_time) if start_time else as_datetime(now or utcnow())
    end = as_datetime(end_time) if end_time else start + DEFAULT_DURATION
    send = as_datetime(send_at) if send_at else start
    return start, end, send
