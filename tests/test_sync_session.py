"""End-to-end sync tests — two users' sessions against the live app.

Learn: Every session talks HTTP to the FastAPI app (ASGITransport) and
subscribes to the same in-process broker the services publish to, so
these tests run the complete loop:

    reviewer action → commit → change event → author's channel
        → registry → cache invalidation → refetch → fresh value
"""

import uuid

import pytest
from conftest import as_user

from reviewsync.errors import ALREADY_REVIEWED_MESSAGE, ConflictError, ValidationError
from reviewsync.sync import keys


async def _submitted_item(client, owner_id, reviewer_id):
    r = await client.post(
        "/api/v1/content",
        json={"org_id": str(uuid.uuid4()), "project_id": str(uuid.uuid4()), "title": "Homepage hero"},
        headers=as_user(owner_id),
    )
    item = r.json()
    r = await client.get(f"/api/v1/content/{item['id']}/versions")
    version = r.json()[0]
    r = await client.post(
        f"/api/v1/content/{item['id']}/versions/{version['id']}/submit",
        json={"reviewer_ids": [str(reviewer_id)]},
        headers=as_user(owner_id),
    )
    assert r.status_code == 200
    return item, r.json()


# ═══════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_approval_reaches_author_unread_count(
    client, make_session, owner_id, reviewer_id, eventually
):
    """Reviewer approves; the author's unread count goes up without a manual refresh."""
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    author = await make_session(owner_id)
    reviewer = await make_session(reviewer_id)
    new_rows = []
    author.notifications.on_new(new_rows.append)

    assert await author.notifications.unread_count() == 0

    approval = await reviewer.workflow.approve(item["id"], version["id"])
    assert approval["decision"] == "approve"

    count_key = keys.notifications.unread_count(owner_id)
    await eventually(lambda: author.cache.get(count_key).is_stale)
    assert await author.notifications.unread_count() == 1

    assert [row["type"] for row in new_rows] == ["content_approved"]
    [row] = await author.notifications.list()
    assert row["metadata"]["version_id"] == version["id"]


@pytest.mark.asyncio
async def test_observed_unread_count_updates_itself(
    client, make_session, owner_id, reviewer_id, eventually
):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    author = await make_session(owner_id)
    reviewer = await make_session(reviewer_id)
    seen = []

    author.notifications.observe_unread_count(lambda entry: seen.append(entry.value))
    await eventually(lambda: seen == [0])

    await reviewer.workflow.request_changes(item["id"], version["id"], "Shorter headline")
    await eventually(lambda: seen and seen[-1] == 1)


@pytest.mark.asyncio
async def test_mark_all_read_zeroes_count(client, make_session, owner_id, reviewer_id, eventually):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    reviewer = await make_session(reviewer_id)
    # The reviewer was notified about the submission
    assert await reviewer.notifications.unread_count() == 1
    assert len(await reviewer.notifications.list()) == 1

    assert await reviewer.notifications.mark_all_read() == 1

    count_key = keys.notifications.unread_count(reviewer_id)
    # Optimistic zero, then the refetch agrees
    assert reviewer.cache.get(count_key).value == 0
    assert await reviewer.notifications.unread_count() == 0
    assert all(row["read"] for row in await reviewer.notifications.list())


@pytest.mark.asyncio
async def test_mark_single_notification_read(client, make_session, owner_id, reviewer_id):
    await _submitted_item(client, owner_id, reviewer_id)
    reviewer = await make_session(reviewer_id)
    [row] = await reviewer.notifications.list()
    assert await reviewer.notifications.unread_count() == 1

    marked = await reviewer.notifications.mark_read(row["id"])

    assert marked["read"] is True
    assert await reviewer.notifications.unread_count() == 0


# ═══════════════════════════════════════════════════════════
# Workflow races
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_second_reviewer_sees_already_reviewed(client, make_session, owner_id, reviewer_id):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    first = await make_session(reviewer_id)
    second = await make_session(uuid.uuid4())

    await first.workflow.approve(item["id"], version["id"])
    with pytest.raises(ConflictError) as exc:
        await second.workflow.request_changes(item["id"], version["id"], "Hold on")

    assert str(exc.value) == ALREADY_REVIEWED_MESSAGE
    assert not second.workflow.is_in_flight(version["id"])


@pytest.mark.asyncio
async def test_blank_feedback_rejected_client_side(client, make_session, owner_id, reviewer_id):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    reviewer = await make_session(reviewer_id)

    with pytest.raises(ValidationError):
        await reviewer.workflow.request_changes(item["id"], version["id"], "  ")

    r = await client.get(f"/api/v1/content/{item['id']}/approvals")
    assert r.json() == []


# ═══════════════════════════════════════════════════════════
# Feeds
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_comment_feed(client, make_session, owner_id, reviewer_id, eventually):
    """New comments from others are announced; our own are not."""
    item, _ = await _submitted_item(client, owner_id, reviewer_id)
    author = await make_session(owner_id)
    reviewer = await make_session(reviewer_id)
    announced, deleted = [], []

    async with author.comment_feed(item["id"]) as feed:
        feed.on_new_comment(announced.append)
        feed.on_deleted(deleted.append)
        assert await feed.comments() == []

        await author.api.add_comment(item["id"], "Note to self")
        comment = await reviewer.api.add_comment(item["id"], "Please cite the study")
        await eventually(lambda: len(announced) == 1)
        assert announced[0]["body"] == "Please cite the study"

        await eventually(lambda: author.cache.get(keys.comments.list(item["id"])).is_stale)
        assert [c["body"] for c in await feed.comments()] == ["Note to self", "Please cite the study"]
        assert await feed.unresolved_count() == 2

        await reviewer.api.delete_comment(comment["id"])
        await eventually(lambda: len(deleted) == 1)
        assert deleted[0]["id"] == comment["id"]

    assert author.registry.channel_count == 1  # only the notifications stream remains


@pytest.mark.asyncio
async def test_content_feed_reports_others_status_changes(
    client, make_session, owner_id, reviewer_id, eventually
):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    author = await make_session(owner_id)
    reviewer = await make_session(reviewer_id)
    changes = []

    feed = author.content_feed(content_item_id=item["id"])
    feed.on_status_change(lambda row, old, new: changes.append((old, new)))
    await feed.start()

    await reviewer.workflow.request_changes(item["id"], version["id"], "Needs a CTA")
    await eventually(lambda: changes == [("in_review", "needs_revision")])

    # The author's own change is not announced back to them
    await author.workflow.create_version(item["id"], "With a CTA")
    await reviewer.api.get_content_item(item["id"])
    assert changes == [("in_review", "needs_revision")]
    await feed.stop()


@pytest.mark.asyncio
async def test_project_feed_covers_every_item(
    client, make_session, owner_id, reviewer_id, eventually
):
    item, version = await _submitted_item(client, owner_id, reviewer_id)
    author = await make_session(owner_id)
    reviewer = await make_session(reviewer_id)
    updated = []

    async with author.content_feed(project_id=item["project_id"]) as feed:
        feed.on_update(updated.append)
        await reviewer.workflow.approve(item["id"], version["id"])
        await eventually(lambda: len(updated) == 1)

    assert updated[0]["id"] == item["id"]
    assert updated[0]["status"] == "approved"
