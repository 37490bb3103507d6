"""
MongoDB models for notices and their per-member inbox projections

A Notice is the anchor document written by staff. An InboxEntry is the
read-optimised copy of a Notice's delivery fields written under one member
for every notice that targets an explicit member list.
"""

from enum import Enum
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024

# Fields copied from a Notice onto each InboxEntry
MIRRORED_FIELDS = ("type", "title", "status", "start_time", "end_time", "send_at")

PLACEHOLDER_STATUS = "pending"
PLACEHOLDER_CREATED_BY = "system:notice-fanout"

_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "mp4": "video/mp4",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def guess_content_type(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return _CONTENT_TYPES.get(ext, "application/octet-stream")


class NoticeType(str, Enum):
    NOTICE = "notice"
    MEMO = "memo"


class NoticeStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENT = "sent"
    ARCHIVED = "archived"


class AudienceType(str, Enum):
    ALL = "all"
    UIDS = "uids"


class UiStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETE = "complete"


class Attachment(BaseModel):
    """Attachment metadata produced by the blob upload service"""

    name: str
    size: int = Field(0, ge=0, le=MAX_ATTACHMENT_BYTES)
    type: str = Field("", validate_default=True)
    url: str

    @field_validator("type")
    @classmethod
    def default_content_type(cls, v, info):
        if v:
            return v
        return guess_content_type(info.data.get("name", ""))


class Audience(BaseModel):
    """Normalized audience declaration"""

    model_config = ConfigDict(use_enum_values=True)

    audience_type: AudienceType
    audience_uids: List[str] = Field(default_factory=list)

    @property
    def is_targeted(self) -> bool:
        return self.audience_type == AudienceType.UIDS


class Notice(BaseModel):
    """Notice document stored at dojos/{dojo_id}/notices/{notice_id}"""

    model_config = ConfigDict(use_enum_values=True)

    notice_id: str
    dojo_id: str
    type: NoticeType = NoticeType.NOTICE
    title: str
    body: str = ""
    audience_type: AudienceType = AudienceType.ALL
    audience_uids: List[str] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    send_at: datetime
    status: NoticeStatus = NoticeStatus.DRAFT
    attachments: List[Attachment] = Field(default_factory=list)
    created_by: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Fan-out bookkeeping, only written for targeted notices
    fanout_succeeded: Optional[int] = None
    fanout_failed: Optional[int] = None
    fanout_failed_uids: List[str] = Field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Notice":
        data = {k: v for k, v in doc.items() if k != "_id"}
        return cls(**data)

    def to_document(self) -> Dict[str, Any]:
        """Convert to a plain dict for MongoDB storage"""
        return self.model_dump(mode="python", exclude_none=True)


class InboxEntry(BaseModel):
    """Projection stored at dojos/{dojo_id}/members/{member_uid}/noticeInbox/{notice_id}"""

    model_config = ConfigDict(use_enum_values=True)

    dojo_id: str
    member_uid: str
    notice_id: str
    type: NoticeType
    title: str
    status: NoticeStatus
    start_time: datetime
    end_time: datetime
    send_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def mirror_fields(cls, notice: Notice) -> Dict[str, Any]:
        """Fields refreshed on every create or update of the projection."""
        data = notice.model_dump(mode="python", include=set(MIRRORED_FIELDS))
        data["dojo_id"] = notice.dojo_id
        data["notice_id"] = notice.notice_id
        return data


class MemberPlaceholder(BaseModel):
    """Minimal member record created when fan-out targets an unknown member"""

    uid: str
    dojo_id: str
    status: str = PLACEHOLDER_STATUS
    created_by: str = PLACEHOLDER_CREATED_BY
    created_at: datetime = Field(default_factory=utcnow)


class FanoutResult(BaseModel):
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    placeholders_created: List[str] = Field(default_factory=list)

    def extend(self, other: "FanoutResult") -> "FanoutResult":
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        self.placeholders_created.extend(other.placeholders_created)
        return self


class PartialFanoutFailure(BaseModel):
    """Warning-level result: the notice is written, some projections are not."""

    notice_id: str
    operation: str
    failed_uids: List[str]


class PublishResult(BaseModel):
    notice_id: str
    fanout: FanoutResult = Field(default_factory=FanoutResult)
    # entries of members dropped when an existing notice id is republished
    removed: FanoutResult = Field(default_factory=FanoutResult)
    partial_failure: Optional[PartialFanoutFailure] = None


class ReconcileResult(BaseModel):
    notice_id: str
    transition: str
    upserted: FanoutResult = Field(default_factory=FanoutResult)
    removed: FanoutResult = Field(default_factory=FanoutResult)
    partial_failure: Optional[PartialFanoutFailure] = None


class NoticeView(BaseModel):
    """Notice as seen by a reader.

    When ``degraded`` is set the view was synthesized from the member's inbox
    projection: body and attachments are not available and audience fields
    are placeholders.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    dojo_id: Optional[str] = None
    type: Optional[NoticeType] = None
    title: Optional[str] = None
    body: Optional[str] = None
    audience_type: Optional[AudienceType] = None
    audience_uids: List[str] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    send_at: Optional[datetime] = None
    status: Optional[NoticeStatus] = None
    attachments: List[Attachment] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    source: str = "notices"
    degraded: bool = False
