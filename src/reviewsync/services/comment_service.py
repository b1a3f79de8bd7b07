"""Review comments — threaded discussion anchored to content items.

Learn: Threads are two levels deep. A reply's parent must be a top-level
comment on the same content item. Only top-level comments can be
resolved, and the unresolved count only looks at them.

Deleting a top-level comment deletes its replies too; every removed row
gets its own DELETE event so each subscriber can drop it from view.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewsync.db.models import Comment, ContentItem, utcnow
from reviewsync.errors import (
    ForbiddenError,
    NotFoundError,
    NotificationDeliveryError,
    ValidationError,
)
from reviewsync.events.types import COMMENTS, NOTIFY_COMMENT_ADDED
from reviewsync.realtime.events import Operation, build_events
from reviewsync.realtime.pubsub import ChangePublisher, publish_changes
from reviewsync.schemas.comment import CommentRead
from reviewsync.schemas.notification import NotificationPayload
from reviewsync.services.notification_service import NotificationService

logger = structlog.get_logger()


def comment_row(comment: Comment) -> dict:
    return CommentRead.model_validate(comment).model_dump(mode="json", exclude={"replies"})


class CommentService:
    def __init__(
        self,
        db: AsyncSession,
        publisher: Optional[ChangePublisher] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.notifier = notifier or NotificationService(db, publisher)

    # ─── Create ───────────────────────────────────────────

    async def add(
        self,
        content_item_id: uuid.UUID,
        *,
        author_id: uuid.UUID,
        body: str,
        version_id: Optional[uuid.UUID] = None,
        parent_id: Optional[uuid.UUID] = None,
        quoted_text: Optional[str] = None,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
        provenance: Optional[str] = None,
    ) -> Comment:
        if not body or not body.strip():
            raise ValidationError("Comment body must not be blank")
        item = await self.db.get(ContentItem, content_item_id)
        if not item:
            raise NotFoundError(f"Content item {content_item_id} not found")

        parent = None
        if parent_id is not None:
            parent = await self.db.get(Comment, parent_id)
            if not parent or parent.content_item_id != content_item_id:
                raise NotFoundError(f"Comment {parent_id} not found")
            if parent.parent_id is not None:
                raise ValidationError("Replies can only be made to top-level comments")

        comment = Comment(
            content_item_id=content_item_id,
            version_id=version_id,
            author_id=author_id,
            parent_id=parent_id,
            body=body.strip(),
            quoted_text=quoted_text,
            range_start=range_start,
            range_end=range_end,
            resolved=False,
        )
        self.db.add(comment)
        await self.db.commit()

        logger.info(
            "comment.added",
            comment_id=str(comment.id),
            content_item_id=str(content_item_id),
            reply=parent_id is not None,
        )

        recipients = [
            r for r in dict.fromkeys([item.owner_id, parent.author_id if parent else None])
            if r is not None and r != author_id
        ]
        if recipients:
            try:
                await self.notifier.notify(
                    recipients,
                    NOTIFY_COMMENT_ADDED,
                    NotificationPayload(
                        title="New comment",
                        body=f'New comment on "{item.title}".',
                        content_item_id=item.id,
                        version_id=version_id,
                        project_id=item.project_id,
                        source_id=str(comment.id),
                        link=f"/content/{item.id}#comment-{comment.id}",
                    ),
                    actor_id=author_id,
                    provenance=provenance,
                )
            except NotificationDeliveryError as e:
                logger.warning("comment.notification_failed", comment_id=str(comment.id), error=str(e))

        await publish_changes(
            self.publisher,
            build_events(COMMENTS, Operation.INSERT, comment_row(comment),
                         origin_actor_id=str(author_id), provenance=provenance),
        )
        return comment

    # ─── Update ───────────────────────────────────────────

    async def update(
        self,
        comment_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        body: str,
        provenance: Optional[str] = None,
    ) -> Comment:
        """Edit a comment's body. Only the author may do this."""
        if not body or not body.strip():
            raise ValidationError("Comment body must not be blank")
        comment = await self._get(comment_id)
        if comment.author_id != actor_id:
            raise ForbiddenError("Only the author can edit a comment")
        return await self._change(
            comment, actor_id=actor_id, provenance=provenance, body=body.strip()
        )

    async def resolve(
        self, comment_id: uuid.UUID, *, actor_id: uuid.UUID, provenance: Optional[str] = None
    ) -> Comment:
        return await self._set_resolved(comment_id, True, actor_id=actor_id, provenance=provenance)

    async def unresolve(
        self, comment_id: uuid.UUID, *, actor_id: uuid.UUID, provenance: Optional[str] = None
    ) -> Comment:
        return await self._set_resolved(comment_id, False, actor_id=actor_id, provenance=provenance)

    async def _set_resolved(
        self,
        comment_id: uuid.UUID,
        resolved: bool,
        *,
        actor_id: uuid.UUID,
        provenance: Optional[str],
    ) -> Comment:
        comment = await self._get(comment_id)
        if comment.parent_id is not None:
            raise ValidationError("Only top-level comments can be resolved")
        if comment.resolved == resolved:
            return comment
        return await self._change(
            comment, actor_id=actor_id, provenance=provenance, resolved=resolved
        )

    async def _change(
        self,
        comment: Comment,
        *,
        actor_id: uuid.UUID,
        provenance: Optional[str],
        **values,
    ) -> Comment:
        old = comment_row(comment)
        for field, value in values.items():
            setattr(comment, field, value)
        comment.updated_at = utcnow()
        await self.db.commit()

        logger.info("comment.updated", comment_id=str(comment.id), fields=sorted(values))
        await publish_changes(
            self.publisher,
            build_events(COMMENTS, Operation.UPDATE, comment_row(comment), old=old,
                         origin_actor_id=str(actor_id), provenance=provenance),
        )
        return comment

    # ─── Delete ───────────────────────────────────────────

    async def delete(
        self,
        comment_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        provenance: Optional[str] = None,
    ) -> int:
        """Delete a comment and its replies. Returns how many rows went away."""
        comment = await self._get(comment_id)
        if comment.author_id != actor_id:
            raise ForbiddenError("Only the author can delete a comment")

        result = await self.db.execute(select(Comment).where(Comment.parent_id == comment.id))
        doomed = [*result.scalars().all(), comment]
        olds = [comment_row(c) for c in doomed]
        # Replies first: they reference the parent row
        for c in doomed[:-1]:
            await self.db.delete(c)
        await self.db.flush()
        await self.db.delete(comment)
        await self.db.commit()

        logger.info("comment.deleted", comment_id=str(comment_id), removed=len(doomed))
        await publish_changes(
            self.publisher,
            (
                event
                for old in olds
                for event in build_events(
                    COMMENTS, Operation.DELETE, {}, old=old,
                    origin_actor_id=str(actor_id), provenance=provenance,
                )
            ),
        )
        return len(doomed)

    # ─── Queries ──────────────────────────────────────────

    async def list_comments(self, content_item_id: uuid.UUID) -> list[CommentRead]:
        """Top-level comments oldest first, each with its replies oldest first."""
        result = await self.db.execute(
            select(Comment)
            .where(Comment.content_item_id == content_item_id)
            .order_by(Comment.created_at, Comment.id)
        )
        threads: dict[uuid.UUID, CommentRead] = {}
        replies: list[Comment] = []
        for c in result.scalars().all():
            if c.parent_id is None:
                threads[c.id] = CommentRead.model_validate(c)
            else:
                replies.append(c)
        for c in replies:
            parent = threads.get(c.parent_id)
            if parent is not None:
                parent.replies.append(CommentRead.model_validate(c))
        return list(threads.values())

    async def unresolved_count(self, content_item_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Comment)
            .where(
                Comment.content_item_id == content_item_id,
                Comment.parent_id.is_(None),
                Comment.resolved.is_(False),
            )
        )
        return result.scalar_one()

    async def _get(self, comment_id: uuid.UUID) -> Comment:
        comment = await self.db.get(Comment, comment_id)
        if not comment:
            raise NotFoundError(f"Comment {comment_id} not found")
        return comment
