"""
Audience validation for notices
"""
from typing import Iterable, List, Optional
from dojo_notices.core.errors import InvalidAudience
from dojo_notices.models.notice import Audience, AudienceType


def normalize_uids(uids: Iterable[str]) -> List[str]:
    """Strip, drop blanks and de-duplicate member ids, keeping first-seen order."""
    seen = set()
    out = []
    for uid in uids:
        uid = str(uid or "").strip()
        if uid and uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out


def resolve_audience(audience_type, audience_uids: Optional[Iterable[str]] = None) -> Audience:
    """Validate a raw audience declaration.

    A ``uids`` audience needs an explicit list (an empty one means nobody
    yet). An ``all`` audience ignores whatever list was supplied.
    """
    try:
        kind = AudienceType(audience_type)
    except ValueError:
        raise InvalidAudience(f"Unknown audience type: {audience_type!r}")

    if kind == AudienceType.ALL:
        return Audience(audience_type=kind, audience_uids=[])

    if audience_uids is None:
        raise InvalidAudience("audience_uids is required when audience_type is 'uids'")
    if isinstance(audience_uids, str):
        raise InvalidAudience("audience_uids must be a list of member ids")
    return Audience(audience_type=kind, audience_uids=normalize_uids(audience_uids))
