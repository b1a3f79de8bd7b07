"""Shared FastAPI dependencies for the API routers.

Learn: Identity is deliberately thin. Authentication happens upstream
(a gateway sets X-User-Id); this service only needs to know who acts.
X-Mutation-Id is the client's provenance tag, copied onto every change
event the request produces.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from reviewsync.db.engine import get_db
from reviewsync.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ReviewSyncError,
    ValidationError,
)
from reviewsync.realtime.pubsub import ChangePublisher
from reviewsync.services.comment_service import CommentService
from reviewsync.services.notification_service import NotificationService
from reviewsync.services.review_service import ReviewService


async def get_actor_id(x_user_id: Optional[str] = Header(None)) -> uuid.UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="X-User-Id must be a UUID")


async def get_mutation_id(x_mutation_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_mutation_id or None


def get_publisher(request: Request) -> Optional[ChangePublisher]:
    return getattr(request.app.state, "publisher", None)


def get_review_service(
    db: AsyncSession = Depends(get_db),
    publisher: Optional[ChangePublisher] = Depends(get_publisher),
) -> ReviewService:
    return ReviewService(db, publisher)


def get_notification_service(
    db: AsyncSession = Depends(get_db),
    publisher: Optional[ChangePublisher] = Depends(get_publisher),
) -> NotificationService:
    return NotificationService(db, publisher)


def get_comment_service(
    db: AsyncSession = Depends(get_db),
    publisher: Optional[ChangePublisher] = Depends(get_publisher),
) -> CommentService:
    return CommentService(db, publisher)


def http_error(e: ReviewSyncError) -> HTTPException:
    """Map a service error onto its HTTP status."""
    if isinstance(e, ConflictError):
        status = 409
    elif isinstance(e, ValidationError):
        status = 422
    elif isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, ForbiddenError):
        status = 403
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(e))
