"""Review workflow service — the approve / request-changes state machine.

Learn: Manages the review lifecycle of a content item:
1. create_content_item → item (draft) + version 1 (draft)
2. submit_version → version draft → submitted, item in_review
3. approve / request_changes → Approval row, version approved /
   changes_requested, item approved / needs_revision
4. create_version → version N+1 (draft) once the latest one is terminal

Each decision is one transaction: the conditional status UPDATE and the
Approval insert commit together or not at all. Only after the commit do
we fan out notifications (failures logged, never rolled back) and
publish change events (best-effort).
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reviewsync.db.models import Approval, ContentItem, ContentVersion, utcnow
from reviewsync.errors import (
    ConflictError,
    NotFoundError,
    NotificationDeliveryError,
    ValidationError,
)
from reviewsync.events.types import (
    APPROVALS,
    CONTENT_DRAFT,
    CONTENT_IN_REVIEW,
    CONTENT_ITEMS,
    CONTENT_VERSIONS,
    DECISION_APPROVE,
    DECISION_REQUEST_CHANGES,
    DECISION_TO_CONTENT_STATUS,
    DECISION_TO_NOTIFICATION,
    DECISION_TO_VERSION_STATUS,
    NOTIFY_APPROVAL_NEEDED,
    NOTIFY_CONTENT_SUBMITTED,
    TERMINAL_VERSION_STATUSES,
    VERSION_DRAFT,
    VERSION_SUBMITTED,
)
from reviewsync.realtime.events import ChangeEvent, Operation, build_events
from reviewsync.realtime.pubsub import ChangePublisher, publish_changes
from reviewsync.schemas.notification import NotificationPayload
from reviewsync.schemas.review import (
    ApprovalRead,
    ApprovalStats,
    ContentItemRead,
    VersionRead,
)
from reviewsync.services.notification_service import NotificationService

logger = structlog.get_logger()


def item_row(item: ContentItem) -> dict:
    return ContentItemRead.model_validate(item).model_dump(mode="json")


def version_row(version: ContentVersion) -> dict:
    return VersionRead.model_validate(version).model_dump(mode="json")


def approval_row(approval: Approval) -> dict:
    return ApprovalRead.model_validate(approval).model_dump(mode="json")


def content_link(item: ContentItem) -> str:
    if item.project_id:
        return f"/projects/{item.project_id}/content/{item.id}"
    return f"/content/{item.id}"


def _excerpt(text: Optional[str], limit: int = 140) -> Optional[str]:
    if not text:
        return None
    return text if len(text) <= limit else text[: limit - 1] + "…"


class ReviewService:
    """Owns content versions and the decisions recorded against them."""

    def __init__(
        self,
        db: AsyncSession,
        publisher: Optional[ChangePublisher] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.notifier = notifier or NotificationService(db, publisher)

    # ─── Create content ───────────────────────────────────

    async def create_content_item(
        self,
        *,
        org_id: uuid.UUID,
        owner_id: uuid.UUID,
        title: str,
        body: str = "",
        project_id: Optional[uuid.UUID] = None,
        provenance: Optional[str] = None,
    ) -> ContentItem:
        """Create a content item with version 1 as its current draft."""
        if not title.strip():
            raise ValidationError("Title must not be blank")

        item = ContentItem(
            id=uuid.uuid4(),
            org_id=org_id,
            project_id=project_id,
            title=title.strip(),
            status=CONTENT_DRAFT,
            owner_id=owner_id,
        )
        version = ContentVersion(
            id=uuid.uuid4(),
            content_item_id=item.id,
            version_number=1,
            status=VERSION_DRAFT,
            body=body,
            created_by=owner_id,
        )
        item.current_version_id = version.id
        self.db.add(item)
        await self.db.flush()
        self.db.add(version)
        await self.db.commit()

        logger.info("content.created", content_item_id=str(item.id), org_id=str(org_id))
        await self._publish(
            build_events(CONTENT_ITEMS, Operation.INSERT, item_row(item),
                         origin_actor_id=str(owner_id), provenance=provenance),
            build_events(CONTENT_VERSIONS, Operation.INSERT, version_row(version),
                         origin_actor_id=str(owner_id), provenance=provenance),
        )
        return item

    # ─── New version ──────────────────────────────────────

    async def create_version(
        self,
        content_item_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        body: str = "",
        compliance_score: Optional[float] = None,
        provenance: Optional[str] = None,
    ) -> ContentVersion:
        """Start version N+1 as a draft.

        Learn: This is the only way back to "draft" after a review. The
        latest version must be terminal, so an in-flight review can never
        be silently superseded.
        """
        item = await self._get_item(content_item_id)
        latest = await self._latest_version(content_item_id)
        if latest is not None and latest.status not in TERMINAL_VERSION_STATUSES:
            raise ConflictError(
                f"Version {latest.version_number} is still {latest.status}"
            )

        old_item = item_row(item)
        version = ContentVersion(
            id=uuid.uuid4(),
            content_item_id=content_item_id,
            version_number=(latest.version_number if latest else 0) + 1,
            status=VERSION_DRAFT,
            body=body,
            compliance_score=compliance_score,
            created_by=actor_id,
        )
        self.db.add(version)
        item.current_version_id = version.id
        item.status = CONTENT_DRAFT
        try:
            await self.db.commit()
        except IntegrityError as e:
            # Someone else created the same version number first
            await self.db.rollback()
            raise ConflictError("A newer version was created concurrently") from e

        logger.info(
            "content.version_created",
            content_item_id=str(content_item_id),
            version=version.version_number,
        )
        await self._publish(
            build_events(CONTENT_VERSIONS, Operation.INSERT, version_row(version),
                         origin_actor_id=str(actor_id), provenance=provenance),
            build_events(CONTENT_ITEMS, Operation.UPDATE, item_row(item), old=old_item,
                         origin_actor_id=str(actor_id), provenance=provenance),
        )
        return version

    # ─── Submit ───────────────────────────────────────────

    async def submit_version(
        self,
        content_item_id: uuid.UUID,
        version_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        reviewer_ids: Optional[list[uuid.UUID]] = None,
        provenance: Optional[str] = None,
    ) -> ContentVersion:
        """Move a draft version to submitted and ask reviewers to look at it."""
        version = await self._get_version(content_item_id, version_id)
        item = await self._get_item(content_item_id)
        if version.status != VERSION_DRAFT:
            raise ConflictError(
                f"Version {version.version_number} is {version.status} and cannot be submitted"
            )

        old_version, old_item = version_row(version), item_row(item)
        result = await self.db.execute(
            update(ContentVersion)
            .where(ContentVersion.id == version_id, ContentVersion.status == VERSION_DRAFT)
            .values(status=VERSION_SUBMITTED, submitted_by=actor_id, submitted_at=utcnow())
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(f"Version {version.version_number} was already submitted")
        item.status = CONTENT_IN_REVIEW
        item.current_version_id = version.id
        await self.db.commit()

        logger.info(
            "review.submitted",
            content_item_id=str(content_item_id),
            version_id=str(version_id),
            reviewers=len(reviewer_ids or []),
        )

        recipients = [r for r in (reviewer_ids or []) if r != actor_id]
        # Version 2+ only exists after a decision on the previous one
        if version.version_number > 1:
            notification_type, title = NOTIFY_APPROVAL_NEEDED, "Approval needed"
            body = (
                f'"{item.title}" was revised (version {version.version_number}) '
                "and needs approval."
            )
        else:
            notification_type, title = NOTIFY_CONTENT_SUBMITTED, "Review requested"
            body = f'"{item.title}" (version {version.version_number}) is ready for review.'
        await self._notify(
            recipients,
            notification_type,
            NotificationPayload(
                title=title,
                body=body,
                content_item_id=item.id,
                version_id=version.id,
                project_id=item.project_id,
                link=content_link(item),
            ),
            actor_id=actor_id,
            provenance=provenance,
        )
        await self._publish(
            build_events(CONTENT_VERSIONS, Operation.UPDATE, version_row(version),
                         old=old_version, origin_actor_id=str(actor_id), provenance=provenance),
            build_events(CONTENT_ITEMS, Operation.UPDATE, item_row(item),
                         old=old_item, origin_actor_id=str(actor_id), provenance=provenance),
        )
        return version

    # ─── Decisions ────────────────────────────────────────

    async def approve(
        self,
        content_item_id: uuid.UUID,
        version_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        feedback: Optional[str] = None,
        provenance: Optional[str] = None,
    ) -> Approval:
        """Approve a submitted version. ConflictError if it is not submitted."""
        return await self._decide(
            DECISION_APPROVE,
            content_item_id,
            version_id,
            actor_id=actor_id,
            feedback=feedback,
            provenance=provenance,
        )

    async def request_changes(
        self,
        content_item_id: uuid.UUID,
        version_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        feedback: Optional[str],
        provenance: Optional[str] = None,
    ) -> Approval:
        """Request changes on a submitted version. Feedback is mandatory."""
        return await self._decide(
            DECISION_REQUEST_CHANGES,
            content_item_id,
            version_id,
            actor_id=actor_id,
            feedback=feedback,
            provenance=provenance,
        )

    async def _decide(
        self,
        decision: str,
        content_item_id: uuid.UUID,
        version_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        feedback: Optional[str],
        provenance: Optional[str],
    ) -> Approval:
        feedback = feedback.strip() if feedback else None
        if decision == DECISION_REQUEST_CHANGES and not feedback:
            raise ValidationError("Feedback is required when requesting changes")

        version = await self._get_version(content_item_id, version_id)
        item = await self._get_item(content_item_id)
        if version.status != VERSION_SUBMITTED:
            raise ConflictError()

        old_version, old_item = version_row(version), item_row(item)

        # Conditional transition: only one concurrent caller can match
        # status = 'submitted'
        result = await self.db.execute(
            update(ContentVersion)
            .where(ContentVersion.id == version_id, ContentVersion.status == VERSION_SUBMITTED)
            .values(status=DECISION_TO_VERSION_STATUS[decision], reviewed_at=utcnow())
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError()

        approval = Approval(
            content_item_id=content_item_id,
            version_id=version_id,
            actor_id=actor_id,
            decision=decision,
            feedback=feedback,
        )
        self.db.add(approval)
        if item.current_version_id == version.id:
            item.status = DECISION_TO_CONTENT_STATUS[decision]
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError() from e
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            "review.decided",
            decision=decision,
            content_item_id=str(content_item_id),
            version_id=str(version_id),
            actor_id=str(actor_id),
        )

        recipients = [
            r for r in dict.fromkeys([item.owner_id, version.submitted_by])
            if r is not None and r != actor_id
        ]
        if decision == DECISION_APPROVE:
            title = "Content approved"
            body = f'"{item.title}" (version {version.version_number}) was approved.'
        else:
            title = "Changes requested"
            body = f'Changes were requested on "{item.title}" (version {version.version_number}).'
        await self._notify(
            recipients,
            DECISION_TO_NOTIFICATION[decision],
            NotificationPayload(
                title=title,
                body=body,
                content_item_id=item.id,
                version_id=version.id,
                project_id=item.project_id,
                link=content_link(item),
                extra={
                    "decision": decision,
                    "feedback_excerpt": _excerpt(feedback),
                },
            ),
            actor_id=actor_id,
            provenance=provenance,
        )
        await self._publish(
            build_events(CONTENT_VERSIONS, Operation.UPDATE, version_row(version),
                         old=old_version, origin_actor_id=str(actor_id), provenance=provenance),
            build_events(CONTENT_ITEMS, Operation.UPDATE, item_row(item),
                         old=old_item, origin_actor_id=str(actor_id), provenance=provenance),
            build_events(APPROVALS, Operation.INSERT, approval_row(approval),
                         origin_actor_id=str(actor_id), provenance=provenance),
        )
        return approval

    # ─── Queries ──────────────────────────────────────────

    async def get_content_item(self, content_item_id: uuid.UUID) -> ContentItem:
        return await self._get_item(content_item_id)

    async def get_version(
        self, content_item_id: uuid.UUID, version_id: uuid.UUID
    ) -> ContentVersion:
        return await self._get_version(content_item_id, version_id)

    async def list_versions(self, content_item_id: uuid.UUID) -> list[ContentVersion]:
        await self._get_item(content_item_id)
        result = await self.db.execute(
            select(ContentVersion)
            .where(ContentVersion.content_item_id == content_item_id)
            .order_by(ContentVersion.version_number)
        )
        return list(result.scalars().all())

    async def list_approvals(self, content_item_id: uuid.UUID) -> list[Approval]:
        """All decisions for a content item, newest first."""
        result = await self.db.execute(
            select(Approval)
            .where(Approval.content_item_id == content_item_id)
            .order_by(Approval.created_at.desc(), Approval.id.desc())
        )
        return list(result.scalars().all())

    async def latest_approval(self, content_item_id: uuid.UUID) -> Optional[Approval]:
        approvals = await self.list_approvals(content_item_id)
        return approvals[0] if approvals else None

    async def approval_stats(self, content_item_id: uuid.UUID) -> ApprovalStats:
        result = await self.db.execute(
            select(Approval.decision, func.count())
            .where(Approval.content_item_id == content_item_id)
            .group_by(Approval.decision)
        )
        counts = dict(result.all())
        approved = counts.get(DECISION_APPROVE, 0)
        changes = counts.get(DECISION_REQUEST_CHANGES, 0)
        return ApprovalStats(total=approved + changes, approved=approved, changes_requested=changes)

    # ─── Helpers ──────────────────────────────────────────

    async def _get_item(self, content_item_id: uuid.UUID) -> ContentItem:
        item = await self.db.get(ContentItem, content_item_id)
        if not item:
            raise NotFoundError(f"Content item {content_item_id} not found")
        return item

    async def _get_version(
        self, content_item_id: uuid.UUID, version_id: uuid.UUID
    ) -> ContentVersion:
        version = await self.db.get(ContentVersion, version_id)
        if not version or version.content_item_id != content_item_id:
            raise NotFoundError(f"Version {version_id} not found")
        return version

    async def _latest_version(self, content_item_id: uuid.UUID) -> Optional[ContentVersion]:
        result = await self.db.execute(
            select(ContentVersion)
            .where(ContentVersion.content_item_id == content_item_id)
            .order_by(ContentVersion.version_number.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _notify(
        self,
        recipients: list[uuid.UUID],
        notification_type: str,
        payload: NotificationPayload,
        *,
        actor_id: uuid.UUID,
        provenance: Optional[str],
    ) -> None:
        """Fan out without ever failing the transition that triggered it."""
        if not recipients:
            return
        try:
            await self.notifier.notify(
                recipients,
                notification_type,
                payload,
                actor_id=actor_id,
                provenance=provenance,
            )
        except NotificationDeliveryError as e:
            logger.warning(
                "review.notification_failed",
                type=notification_type,
                content_item_id=str(payload.content_item_id),
                version_id=str(payload.version_id),
                error=str(e),
            )

    async def _publish(self, *batches: list[ChangeEvent]) -> None:
        await publish_changes(
            self.publisher, (event for batch in batches for event in batch)
        )
