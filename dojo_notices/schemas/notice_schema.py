"""
Notice domain schemas
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional
from dojo_notices.models.notice import Attachment, NoticeStatus, NoticeType, NoticeView, UiStatus


class NoticeCreateIn(BaseModel):
    type: NoticeType = Field(NoticeType.NOTICE, description="notice|memo")
    title: str = Field(..., description="Notice title")
    body: Optional[str] = Field(None, description="Notice body")
    audience_type: str = Field("all", description="all|uids")
    audience_uids: Optional[List[str]] = Field(None, description="Member ids, required when audience_type is 'uids'")
    start_time: Optional[datetime] = Field(None, description="Display window start, defaults to now")
    end_time: Optional[datetime] = Field(None, description="Display window end, defaults to start + 30 days")
    send_at: Optional[datetime] = Field(None, description="Delivery time, defaults to start_time")
    status: NoticeStatus = Field(NoticeStatus.DRAFT, description="draft|scheduled|sent|archived")
    attachments: List[Attachment] = Field(default_factory=list)
    created_by: str = Field("", description="Author id")
    notice_id: Optional[str] = Field(None, description="Republish an existing notice id")


class NoticeUpdateIn(BaseModel):
    type: Optional[NoticeType] = None
    title: Optional[str] = None
    body: Optional[str] = None
    audience_type: Optional[str] = None
    audience_uids: Optional[List[str]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    send_at: Optional[datetime] = None
    status: Optional[NoticeStatus] = None
    attachments: Optional[List[Attachment]] = None


class NoticeOut(NoticeView):
    ui_status: UiStatus = Field(..., description="upcoming|active|complete, display only")
    fanout_succeeded: Optional[int] = None
    fanout_failed: Optional[int] = None
