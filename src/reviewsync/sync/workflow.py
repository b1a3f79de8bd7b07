"""Client-side review workflow engine.

Learn: The server decides who wins a review race (conditional UPDATE).
The client's job is to never start a second race with itself:

1. Single-flight per version: while an action on a version is in flight,
   another approve / request-changes / submit on it fails fast with
   ActionInProgressError. The flag is a set entry cleared in `finally`.
2. Validation before I/O: blank feedback on request_changes raises
   ValidationError and nothing is sent.
3. Provenance before the RPC: the mutation id goes out with the request,
   so the change events it produces come back marked as ours.
4. Speculative update: cached version/item status flips immediately and
   rolls back if the RPC fails.
5. Invalidation after: approvals, versions and the item detail are
   refetched whatever the outcome, since our own events are skipped.

Errors (ConflictError, ValidationError, RequestTimeoutError) go straight
back to the caller. Nothing is retried.
"""

from typing import Any, Callable, Optional

import structlog

from reviewsync.errors import ActionInProgressError, ValidationError
from reviewsync.events.types import (
    APPROVALS,
    CONTENT_IN_REVIEW,
    CONTENT_ITEMS,
    CONTENT_VERSIONS,
    DECISION_APPROVE,
    DECISION_REQUEST_CHANGES,
    DECISION_TO_CONTENT_STATUS,
    DECISION_TO_VERSION_STATUS,
    VERSION_SUBMITTED,
)
from reviewsync.sync import keys
from reviewsync.sync.api import ReviewSyncApi
from reviewsync.sync.cache import LocalCache
from reviewsync.sync.provenance import ProvenanceLedger

logger = structlog.get_logger()

# Entity types a review decision emits change events for
DECISION_ENTITIES = (CONTENT_VERSIONS, CONTENT_ITEMS, APPROVALS)


class ReviewWorkflowEngine:
    def __init__(self, api: ReviewSyncApi, cache: LocalCache, provenance: ProvenanceLedger):
        self.api = api
        self.cache = cache
        self.provenance = provenance
        self._in_flight: set[str] = set()

    def is_in_flight(self, version_id) -> bool:
        return str(version_id) in self._in_flight

    # ─── Decisions ────────────────────────────────────────

    async def approve(self, content_item_id, version_id, feedback: Optional[str] = None) -> dict:
        return await self._decide(DECISION_APPROVE, content_item_id, version_id, feedback)

    async def request_changes(self, content_item_id, version_id, feedback: Optional[str]) -> dict:
        if not feedback or not feedback.strip():
            raise ValidationError("Feedback is required when requesting changes")
        return await self._decide(DECISION_REQUEST_CHANGES, content_item_id, version_id, feedback)

    async def _decide(self, decision: str, content_item_id, version_id, feedback) -> dict:
        call = (
            self.api.approve_version if decision == DECISION_APPROVE else self.api.request_changes
        )
        return await self._single_flight(
            version_id,
            content_item_id,
            lambda mutation_id: call(
                content_item_id, version_id, feedback, mutation_id=mutation_id
            ),
            version_status=DECISION_TO_VERSION_STATUS[decision],
            item_status=DECISION_TO_CONTENT_STATUS[decision],
            action=decision,
        )

    async def submit(self, content_item_id, version_id, reviewer_ids=()) -> dict:
        return await self._single_flight(
            version_id,
            content_item_id,
            lambda mutation_id: self.api.submit_version(
                content_item_id, version_id, reviewer_ids, mutation_id=mutation_id
            ),
            version_status=VERSION_SUBMITTED,
            item_status=CONTENT_IN_REVIEW,
            action="submit",
        )

    async def create_version(
        self, content_item_id, body: str = "", compliance_score: Optional[float] = None
    ) -> dict:
        guard = f"new:{content_item_id}"
        if guard in self._in_flight:
            raise ActionInProgressError(guard)
        self._in_flight.add(guard)
        mutation_id = self.provenance.new_mutation((CONTENT_VERSIONS, CONTENT_ITEMS))
        try:
            return await self.api.create_version(
                content_item_id, body, compliance_score, mutation_id=mutation_id
            )
        except BaseException:
            self.provenance.discard(mutation_id)
            raise
        finally:
            self._in_flight.discard(guard)
            self._invalidate(content_item_id)

    # ─── Internals ────────────────────────────────────────

    async def _single_flight(
        self,
        version_id,
        content_item_id,
        rpc: Callable[[str], Any],
        *,
        version_status: str,
        item_status: str,
        action: str,
    ) -> dict:
        vid = str(version_id)
        # Check-and-add with no await in between
        if vid in self._in_flight:
            raise ActionInProgressError(vid)
        self._in_flight.add(vid)
        try:
            mutation_id = self.provenance.new_mutation(DECISION_ENTITIES)
            rollback = self._speculate(content_item_id, vid, version_status, item_status)
            try:
                result = await rpc(mutation_id)
            except BaseException as e:
                self.provenance.discard(mutation_id)
                rollback()
                logger.info(
                    "workflow.action_failed",
                    action=action,
                    version_id=vid,
                    error_type=type(e).__name__,
                )
                raise
            logger.info("workflow.action_applied", action=action, version_id=vid)
            return result
        finally:
            self._in_flight.discard(vid)
            self._invalidate(content_item_id)

    def _speculate(self, content_item_id, version_id: str, version_status: str, item_status: str):
        """Flip cached statuses now. Returns a function that undoes it."""
        versions_key = keys.content.versions(content_item_id)
        detail_key = keys.content.detail(content_item_id)
        before: dict = {}

        for key, apply in (
            (versions_key, lambda rows: [
                {**row, "status": version_status} if str(row.get("id")) == version_id else row
                for row in rows
            ]),
            (detail_key, lambda item: {**item, "status": item_status}),
        ):
            entry = self.cache.get(key)
            if entry:
                before[key] = entry.value
                self.cache.update(key, apply)

        def rollback() -> None:
            for key, value in before.items():
                self.cache.update(key, lambda _current, value=value: value)

        return rollback

    def _invalidate(self, content_item_id) -> None:
        self.cache.invalidate_many(
            [
                *keys.approvals.all_for(content_item_id),
                keys.content.versions(content_item_id),
                keys.content.detail(content_item_id),
            ]
        )
