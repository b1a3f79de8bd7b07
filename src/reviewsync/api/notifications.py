"""Notification center API.

Learn: A user's notifications are private. Every route checks that the
caller (X-User-Id) is the user whose notifications are touched.

- GET  /users/:uid/notifications?limit=&unread_only= → newest first
- GET  /users/:uid/notifications/unread-count
- POST /users/:uid/notifications/read-all
- POST /notifications/:id/read
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from reviewsync.api.deps import (
    get_actor_id,
    get_mutation_id,
    get_notification_service,
    http_error,
)
from reviewsync.config import settings
from reviewsync.errors import ReviewSyncError
from reviewsync.schemas.notification import MarkAllReadResult, NotificationRead, UnreadCount
from reviewsync.services.notification_service import NotificationService

router = APIRouter()


def _require_self(user_id: uuid.UUID, actor_id: uuid.UUID) -> None:
    if user_id != actor_id:
        raise HTTPException(status_code=403, detail="Notifications are private to their recipient")


@router.get("/users/{user_id}/notifications", response_model=list[NotificationRead])
async def list_notifications(
    user_id: uuid.UUID,
    limit: int = Query(settings.notification_list_limit, ge=1, le=200),
    unread_only: bool = Query(False),
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: NotificationService = Depends(get_notification_service),
):
    """List a user's notifications (newest first)."""
    _require_self(user_id, actor_id)
    return await svc.list_notifications(user_id, limit=limit, unread_only=unread_only)


@router.get("/users/{user_id}/notifications/unread-count", response_model=UnreadCount)
async def unread_count(
    user_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: NotificationService = Depends(get_notification_service),
):
    _require_self(user_id, actor_id)
    return UnreadCount(user_id=user_id, unread=await svc.unread_count(user_id))


@router.post("/users/{user_id}/notifications/read-all", response_model=MarkAllReadResult)
async def mark_all_read(
    user_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: NotificationService = Depends(get_notification_service),
):
    """Mark every unread notification of the user read."""
    _require_self(user_id, actor_id)
    updated = await svc.mark_all_read(user_id, provenance=mutation_id)
    return MarkAllReadResult(user_id=user_id, updated=updated)


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: NotificationService = Depends(get_notification_service),
):
    try:
        return await svc.mark_read(notification_id, actor_id=actor_id, provenance=mutation_id)
    except ReviewSyncError as e:
        raise http_error(e) from e
