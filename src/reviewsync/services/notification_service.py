"""Notification fan-out and read tracking.

Learn: Fan-out is idempotent per logical event. Each recipient's row is
keyed by sha256(type, content item, version, recipient[, source]); a
second notify() for the same event returns the rows the first one
created. The unread count is always a COUNT over the rows, never a
stored counter, so it cannot drift from the records.

Every committed mutation is published as a change event on the
recipient's notifications stream.
"""

import hashlib
import uuid
from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reviewsync.db.models import Notification
from reviewsync.errors import NotFoundError, NotificationDeliveryError, ValidationError
from reviewsync.events.types import NOTIFICATION_TYPES, NOTIFICATIONS
from reviewsync.realtime.events import Operation, build_events
from reviewsync.realtime.pubsub import ChangePublisher, publish_changes
from reviewsync.schemas.notification import NotificationPayload, NotificationRead

logger = structlog.get_logger()


def idempotency_key(
    notification_type: str,
    recipient_id: uuid.UUID,
    payload: NotificationPayload,
) -> str:
    """Stable key for one (recipient, source action) pair."""
    parts = [
        notification_type,
        str(payload.content_item_id or ""),
        str(payload.version_id or ""),
        str(recipient_id),
    ]
    if payload.source_id:
        parts.append(payload.source_id)
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


def notification_row(notification: Notification) -> dict:
    """The row shape published on the change stream."""
    return NotificationRead.model_validate(notification).model_dump(mode="json")


class NotificationService:
    """Creates notifications and flips their read state."""

    def __init__(self, db: AsyncSession, publisher: Optional[ChangePublisher] = None):
        self.db = db
        self.publisher = publisher

    # ─── Fan-out ──────────────────────────────────────────

    async def notify(
        self,
        recipients: Iterable[uuid.UUID],
        notification_type: str,
        payload: NotificationPayload,
        *,
        actor_id: Optional[uuid.UUID] = None,
        provenance: Optional[str] = None,
    ) -> list[Notification]:
        """Create one notification per recipient, reusing rows from earlier calls.

        Raises NotificationDeliveryError if the rows cannot be written.
        """
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification type: {notification_type}")

        recipient_ids = list(dict.fromkeys(recipients))
        if not recipient_ids:
            return []
        keys = {
            rid: idempotency_key(notification_type, rid, payload)
            for rid in recipient_ids
        }

        try:
            existing = await self._by_keys(keys.values())
            created = []
            for rid in recipient_ids:
                if keys[rid] in existing:
                    continue
                notification = Notification(
                    recipient_id=rid,
                    type=notification_type,
                    title=payload.title,
                    body=payload.body,
                    meta=payload.metadata(),
                    read=False,
                    idempotency_key=keys[rid],
                )
                self.db.add(notification)
                created.append(notification)
            await self.db.commit()
        except IntegrityError:
            # A concurrent fan-out for the same event won the insert
            await self.db.rollback()
            created = []
            try:
                existing = await self._by_keys(keys.values())
            except SQLAlchemyError as e:
                raise NotificationDeliveryError(str(e)) from e
            if len(existing) < len(keys):
                raise NotificationDeliveryError(
                    "notification rows missing after idempotent retry"
                )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise NotificationDeliveryError(str(e)) from e

        by_key = {**existing, **{n.idempotency_key: n for n in created}}
        if created:
            logger.info(
                "notifications.created",
                type=notification_type,
                count=len(created),
                reused=len(existing),
            )
            await publish_changes(
                self.publisher,
                (
                    event
                    for n in created
                    for event in build_events(
                        NOTIFICATIONS,
                        Operation.INSERT,
                        notification_row(n),
                        origin_actor_id=str(actor_id) if actor_id else None,
                        provenance=provenance,
                    )
                ),
            )
        return [by_key[keys[rid]] for rid in recipient_ids]

    async def _by_keys(self, keys: Iterable[str]) -> dict[str, Notification]:
        result = await self.db.execute(
            select(Notification).where(Notification.idempotency_key.in_(list(keys)))
        )
        return {n.idempotency_key: n for n in result.scalars().all()}

    # ─── Queries ──────────────────────────────────────────

    async def list_notifications(
        self,
        user_id: uuid.UUID,
        *,
        limit: int = 50,
        unread_only: bool = False,
    ) -> list[Notification]:
        """Newest first."""
        q = (
            select(Notification)
            .where(Notification.recipient_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        if unread_only:
            q = q.where(Notification.read.is_(False))
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def unread_count(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.recipient_id == user_id, Notification.read.is_(False))
        )
        return result.scalar_one()

    # ─── Read state ───────────────────────────────────────

    async def mark_read(
        self,
        notification_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        provenance: Optional[str] = None,
    ) -> Notification:
        """Mark one notification read. Only its recipient may do this."""
        notification = await self.db.get(Notification, notification_id)
        if not notification or notification.recipient_id != actor_id:
            raise NotFoundError(f"Notification {notification_id} not found")
        if notification.read:
            return notification

        old = notification_row(notification)
        notification.read = True
        await self.db.commit()

        await publish_changes(
            self.publisher,
            build_events(
                NOTIFICATIONS,
                Operation.UPDATE,
                notification_row(notification),
                old=old,
                origin_actor_id=str(actor_id),
                provenance=provenance,
            ),
        )
        return notification

    async def mark_all_read(
        self,
        user_id: uuid.UUID,
        *,
        provenance: Optional[str] = None,
    ) -> int:
        """Mark every unread notification of a user read. Returns how many changed."""
        result = await self.db.execute(
            select(Notification).where(
                Notification.recipient_id == user_id, Notification.read.is_(False)
            )
        )
        unread = list(result.scalars().all())
        if not unread:
            return 0

        olds = {n.id: notification_row(n) for n in unread}
        await self.db.execute(
            update(Notification)
            .where(Notification.id.in_(list(olds)), Notification.read.is_(False))
            .values(read=True)
        )
        await self.db.commit()
        for n in unread:
            n.read = True

        logger.info("notifications.marked_all_read", user_id=str(user_id), count=len(unread))
        await publish_changes(
            self.publisher,
            (
                event
                for n in unread
                for event in build_events(
                    NOTIFICATIONS,
                    Operation.UPDATE,
                    notification_row(n),
                    old=olds[n.id],
                    origin_actor_id=str(user_id),
                    provenance=provenance,
                )
            ),
        )
        return len(unread)
