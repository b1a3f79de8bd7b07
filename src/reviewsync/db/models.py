"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table, and each table is one change-stream entity type.

Key concepts:
- UUID primary keys (ids travel in stream filters and cache keys)
- Portable column types (Uuid, JSON with a JSONB variant) so the same
  models run on PostgreSQL in production and SQLite in tests
- Write-once rows (approvals) are protected by unique constraints, not
  by application code alone
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from reviewsync.events.types import CONTENT_DRAFT, VERSION_DRAFT

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# ══════════════════════════════════════════════════════════════
# Content under review
# ══════════════════════════════════════════════════════════════


class ContentItem(Base):
    """A piece of content an organization submits for review.

    Learn: The item's status is an aggregate of its latest version's
    review state. It is what list views show; the per-version status is
    what the workflow guards on.
    """

    __tablename__ = "content_items"
    __table_args__ = (
        Index("idx_content_items_org", "org_id"),
        Index("idx_content_items_project", "project_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CONTENT_DRAFT
    )  # draft, in_review, approved, needs_revision
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    current_version_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class ContentVersion(Base):
    """One immutable revision of a content item.

    Learn: draft → submitted → approved | changes_requested. There is no
    edge back to draft; after changes are requested the author creates
    version N+1 and this row never changes again.
    """

    __tablename__ = "content_versions"
    __table_args__ = (
        UniqueConstraint("content_item_id", "version_number", name="uq_versions_item_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    content_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("content_items.id"), nullable=False
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VERSION_DRAFT
    )  # draft, submitted, approved, changes_requested
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    compliance_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    submitted_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Approval(Base):
    """Write-once audit record of one review decision.

    Learn: The unique constraint on version_id is the database-level
    half of "exactly one decision per version". The conditional status
    UPDATE is the other half; either one alone turns a lost race into a
    ConflictError.
    """

    __tablename__ = "approvals"
    __table_args__ = (
        UniqueConstraint("version_id", name="uq_approvals_version"),
        Index("idx_approvals_item", "content_item_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    content_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("content_items.id"), nullable=False
    )
    version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("content_versions.id"), nullable=False
    )
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)  # approve, request_changes
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ══════════════════════════════════════════════════════════════
# Participation: notifications and comments
# ══════════════════════════════════════════════════════════════


class Notification(Base):
    """In-app notification for one recipient.

    Learn: Only `read` ever changes. idempotency_key is a hash of
    (type, content item, version, recipient[, source]) so a repeated
    fan-out for the same logical event finds the existing row instead
    of inserting a second one.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_notifications_idempotency"),
        Index("idx_notifications_recipient_read", "recipient_id", "read"),
        Index("idx_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # "metadata" is reserved by SQLAlchemy's declarative base
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Comment(Base):
    """A review comment, optionally a reply and optionally anchored to quoted text.

    Learn: Threads are two levels deep: top-level comments carry the
    resolved flag, replies hang off them via parent_id.
    """

    __tablename__ = "comments"
    __table_args__ = (
        Index("idx_comments_item", "content_item_id", "created_at"),
        Index("idx_comments_parent", "parent_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    content_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("content_items.id"), nullable=False
    )
    version_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("content_versions.id"), nullable=True
    )
    author_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("comments.id"), nullable=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    quoted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    range_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    range_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
