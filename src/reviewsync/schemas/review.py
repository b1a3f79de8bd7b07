"""Pydantic schemas for content items, versions and review decisions.

Learn: The review workflow on the wire:
1. POST content → item (status=draft) with version 1 (draft)
2. POST .../submit → version submitted, item in_review
3. POST .../approve or .../request-changes → Approval record,
   version approved / changes_requested, item approved / needs_revision
4. POST .../versions → version N+1 (draft) after a terminal decision
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ─── Content items ───────────────────────────────────────


class ContentItemCreate(BaseModel):
    """Create a content item together with its first draft version."""
    org_id: uuid.UUID = Field(..., description="Owning organization")
    project_id: Optional[uuid.UUID] = Field(None, description="Project the item belongs to")
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field("", description="Body of version 1")


class ContentItemRead(BaseModel):
    """A content item and its aggregate review status."""
    id: uuid.UUID
    org_id: uuid.UUID
    project_id: Optional[uuid.UUID]
    title: str
    status: str
    owner_id: uuid.UUID
    current_version_id: Optional[uuid.UUID]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ─── Versions ────────────────────────────────────────────


class VersionCreate(BaseModel):
    """Start a new draft version after a terminal decision."""
    body: str = Field("", description="Version body")
    compliance_score: Optional[float] = Field(None, ge=0, le=100)


class SubmitRequest(BaseModel):
    """Submit a draft version for review."""
    reviewer_ids: list[uuid.UUID] = Field(
        default_factory=list, description="Users to notify that a review is needed"
    )


class VersionRead(BaseModel):
    """One revision of a content item."""
    id: uuid.UUID
    content_item_id: uuid.UUID
    version_number: int
    status: str
    body: str
    compliance_score: Optional[float]
    created_by: uuid.UUID
    submitted_by: Optional[uuid.UUID]
    created_at: datetime
    submitted_at: Optional[datetime]
    reviewed_at: Optional[datetime]

    model_config = {"from_attributes": True}


# ─── Decisions ───────────────────────────────────────────


class ApproveRequest(BaseModel):
    """Approve a submitted version."""
    feedback: Optional[str] = Field(None, description="Optional reviewer note")


class RequestChangesRequest(BaseModel):
    """Request changes on a submitted version. Feedback is checked by the service."""
    feedback: Optional[str] = Field(None, description="Required: what needs to change")


class ApprovalRead(BaseModel):
    """A write-once review decision."""
    id: uuid.UUID
    content_item_id: uuid.UUID
    version_id: uuid.UUID
    actor_id: uuid.UUID
    decision: str
    feedback: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class ApprovalStats(BaseModel):
    """Decision counts for a content item."""
    total: int
    approved: int
    changes_requested: int
