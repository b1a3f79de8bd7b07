"""Pydantic schemas for review comments."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class CommentCreate(BaseModel):
    """Create a comment or a reply."""
    body: str = Field(..., description="Comment text")
    version_id: Optional[uuid.UUID] = Field(None, description="Version the comment refers to")
    parent_id: Optional[uuid.UUID] = Field(None, description="Top-level comment being replied to")
    quoted_text: Optional[str] = Field(None, description="Text selection the comment is anchored to")
    range_start: Optional[int] = Field(None, ge=0)
    range_end: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_range(self):
        if (self.range_start is None) != (self.range_end is None):
            raise ValueError("range_start and range_end must be given together")
        if self.range_start is not None and self.range_end < self.range_start:
            raise ValueError("range_end must not precede range_start")
        return self


class CommentUpdate(BaseModel):
    body: str


class CommentRead(BaseModel):
    """A comment; top-level comments carry their replies."""
    id: uuid.UUID
    content_item_id: uuid.UUID
    version_id: Optional[uuid.UUID]
    author_id: uuid.UUID
    parent_id: Optional[uuid.UUID]
    body: str
    quoted_text: Optional[str]
    range_start: Optional[int]
    range_end: Optional[int]
    resolved: bool
    created_at: datetime
    updated_at: datetime
    replies: list["CommentRead"] = []

    model_config = {"from_attributes": True}


class UnresolvedCount(BaseModel):
    content_item_id: uuid.UUID
    unresolved: int
