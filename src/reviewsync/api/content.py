"""Content review API.

Learn: Routes for the review workflow:
- POST /content → create an item with its first draft version
- GET  /content/:id → item with aggregate status
- GET  /content/:id/versions → all versions, oldest first
- POST /content/:id/versions → start version N+1 after a decision
- POST /content/:id/versions/:vid/submit → draft → submitted
- POST /content/:id/versions/:vid/approve → submitted → approved
- POST /content/:id/versions/:vid/request-changes → submitted → changes_requested
- GET  /content/:id/approvals[/latest|/stats] → decision history

A lost approval race answers 409 with "This version was already
reviewed by someone else."
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends

from reviewsync.api.deps import (
    get_actor_id,
    get_mutation_id,
    get_review_service,
    http_error,
)
from reviewsync.errors import ReviewSyncError
from reviewsync.schemas.review import (
    ApprovalRead,
    ApprovalStats,
    ApproveRequest,
    ContentItemCreate,
    ContentItemRead,
    RequestChangesRequest,
    SubmitRequest,
    VersionCreate,
    VersionRead,
)
from reviewsync.services.review_service import ReviewService

router = APIRouter()


# ─── Content items ───────────────────────────────────────


@router.post("/content", response_model=ContentItemRead, status_code=201)
async def create_content_item(
    body: ContentItemCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: ReviewService = Depends(get_review_service),
):
    """Create a content item owned by the caller, with version 1 as a draft."""
    try:
        return await svc.create_content_item(
            org_id=body.org_id,
            owner_id=actor_id,
            title=body.title,
            body=body.body,
            project_id=body.project_id,
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.get("/content/{content_item_id}", response_model=ContentItemRead)
async def get_content_item(
    content_item_id: uuid.UUID,
    svc: ReviewService = Depends(get_review_service),
):
    try:
        return await svc.get_content_item(content_item_id)
    except ReviewSyncError as e:
        raise http_error(e) from e


# ─── Versions ────────────────────────────────────────────


@router.get("/content/{content_item_id}/versions", response_model=list[VersionRead])
async def list_versions(
    content_item_id: uuid.UUID,
    svc: ReviewService = Depends(get_review_service),
):
    try:
        return await svc.list_versions(content_item_id)
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.post(
    "/content/{content_item_id}/versions",
    response_model=VersionRead,
    status_code=201,
)
async def create_version(
    content_item_id: uuid.UUID,
    body: VersionCreate,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: ReviewService = Depends(get_review_service),
):
    """Start a new draft version once the latest one has a decision."""
    try:
        return await svc.create_version(
            content_item_id,
            actor_id=actor_id,
            body=body.body,
            compliance_score=body.compliance_score,
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.post(
    "/content/{content_item_id}/versions/{version_id}/submit",
    response_model=VersionRead,
)
async def submit_version(
    content_item_id: uuid.UUID,
    version_id: uuid.UUID,
    body: Optional[SubmitRequest] = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: ReviewService = Depends(get_review_service),
):
    """Submit a draft version for review."""
    try:
        return await svc.submit_version(
            content_item_id,
            version_id,
            actor_id=actor_id,
            reviewer_ids=body.reviewer_ids if body else [],
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


# ─── Decisions ───────────────────────────────────────────


@router.post(
    "/content/{content_item_id}/versions/{version_id}/approve",
    response_model=ApprovalRead,
)
async def approve_version(
    content_item_id: uuid.UUID,
    version_id: uuid.UUID,
    body: Optional[ApproveRequest] = None,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: ReviewService = Depends(get_review_service),
):
    """Approve a submitted version."""
    try:
        return await svc.approve(
            content_item_id,
            version_id,
            actor_id=actor_id,
            feedback=body.feedback if body else None,
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


@router.post(
    "/content/{content_item_id}/versions/{version_id}/request-changes",
    response_model=ApprovalRead,
)
async def request_changes(
    content_item_id: uuid.UUID,
    version_id: uuid.UUID,
    body: RequestChangesRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    mutation_id: Optional[str] = Depends(get_mutation_id),
    svc: ReviewService = Depends(get_review_service),
):
    """Request changes on a submitted version. Feedback must not be blank."""
    try:
        return await svc.request_changes(
            content_item_id,
            version_id,
            actor_id=actor_id,
            feedback=body.feedback,
            provenance=mutation_id,
        )
    except ReviewSyncError as e:
        raise http_error(e) from e


# ─── Approval history ────────────────────────────────────


@router.get("/content/{content_item_id}/approvals", response_model=list[ApprovalRead])
async def list_approvals(
    content_item_id: uuid.UUID,
    svc: ReviewService = Depends(get_review_service),
):
    """List all decisions for a content item (newest first)."""
    return await svc.list_approvals(content_item_id)


@router.get(
    "/content/{content_item_id}/approvals/latest",
    response_model=Optional[ApprovalRead],
)
async def latest_approval(
    content_item_id: uuid.UUID,
    svc: ReviewService = Depends(get_review_service),
):
    return await svc.latest_approval(content_item_id)


@router.get("/content/{content_item_id}/approvals/stats", response_model=ApprovalStats)
async def approval_stats(
    content_item_id: uuid.UUID,
    svc: ReviewService = Depends(get_review_service),
):
    return await svc.approval_stats(content_item_id)
