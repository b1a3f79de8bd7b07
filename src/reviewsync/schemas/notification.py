"""Pydantic schemas for notifications."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class NotificationPayload(BaseModel):
    """What the fan-out needs to render and de-duplicate one logical event."""
    title: str
    body: str = ""
    content_item_id: Optional[uuid.UUID] = None
    version_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    source_id: Optional[str] = Field(
        None, description="Distinguishes several events of one type on the same version"
    )
    link: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def metadata(self) -> dict[str, Any]:
        meta = {
            "content_item_id": str(self.content_item_id) if self.content_item_id else None,
            "version_id": str(self.version_id) if self.version_id else None,
            "project_id": str(self.project_id) if self.project_id else None,
            "link": self.link,
            **self.extra,
        }
        return {k: v for k, v in meta.items() if v is not None}


class NotificationRead(BaseModel):
    """A notification as shown in the notification center."""
    id: uuid.UUID
    user_id: uuid.UUID = Field(validation_alias="recipient_id")
    type: str
    title: str
    body: str
    metadata: dict[str, Any] = Field(validation_alias="meta")
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class UnreadCount(BaseModel):
    user_id: uuid.UUID
    unread: int


class MarkAllReadResult(BaseModel):
    user_id: uuid.UUID
    updated: int
