"""Review comment API.

Learn: Routes for threaded comments on a content item:
- GET    /content/:id/comments → top-level comments with replies, oldest first
- GET    /content/:id/comments/unresolved-count
- POST   /content/:id/comments → add a comment or a reply (parent_id)
- PATCH  /comments/:id → edit (author only)
- POST   /comments/:id/resolve, /comments/:id/unresolve
- DELETE /comments/:id → delete with replies (author only)
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Response

from reviewsync.api.deps import (
    get_actor_id,
    get_comment_service,
    get_mutation_id,
    http_error,
)
from reviewsync.errors import ReviewSyncError
from reviewsync.schemas.comment import CommentCreate, CommentRead, CommentUpdate, UnresolvedCount
from reviewsync.services.comment_service import CommentService

router = APIRouter()


@router.get("/content/{content_item_id}/comments", response_model=list[CommentRead])
async def list_comments(
    content_item_id: uuid.UUID,
    svc: CommentService = Depends(get_comment_service),
):
    return await svc.list_comments(content_item_id)


@router.get(
    "/content/{content_item_id}/comments/unresolved-count",
    response_model=UnresolvedCount,
)
async def unresolved_count(
    content_item_id: uuid.UUID,
    svc: CommentService = Depends(get_comment_service),
):
    return UnresolvedCount(
        content_item_id=content_item_id,
        unresolved=await svc.unresolved_count(content_item_id),
    )


@router.post(
    "/content/{content_item_id}/comments",
    response_model=CommentRead,
    status_code=201,
)
async def add_comment(
    content_item_id: uuid.UUID,
    body: CommentCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: CommentService = Depends(get_comment_service),
):
    try:
        return await svc.add(
            content_item_id,
            author_id=actor_id,
            body=body.body,
            version_id=body.version_id,
            parent_id=body.parent_id,
            quoted_text=body.quoted_text,
            range_start=body.range_start,
            range_end=body.range_end,
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.patch("/comments/{comment_id}", response_model=CommentRead)
async def update_comment(
    comment_id: uuid.UUID,
    body: CommentUpdate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: CommentService = Depends(get_comment_service),
):
    try:
        return await svc.update(comment_id, actor_id=actor_id, body=body.body, provenance=mutation_id)
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.post("/comments/{comment_id}/resolve", response_model=CommentRead)
async def resolve_comment(
    comment_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: CommentService = Depends(get_comment_service),
):
    try:
        return await svc.resolve(comment_id, actor_id=actor_id, provenance=mutation_id)
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.post("/comments/{comment_id}/unresolve", response_model=CommentRead)
async def unresolve_comment(
    comment_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: CommentService = Depends(get_comment_service),
):
    try:
        return await svc.unresolve(comment_id, actor_id=actor_id, provenance=mutation_id)
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.delete("/comments/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: CommentService = Depends(get_comment_service),
):
    try:
        await svc.delete(comment_id, actor_id=actor_id, provenance=mutation_id)
    except ReviewSyncError as e:
        raise http_error(e) from e
    return Response(status_code=204)
