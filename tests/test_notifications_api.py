"""Notification center API tests."""

import uuid

import pytest
from conftest import as_user

from reviewsync.schemas.notification import NotificationPayload
from reviewsync.services.notification_service import NotificationService


async def _notify(db_session, broker, user_id, count=1):
    svc = NotificationService(db_session, broker)
    for i in range(count):
        await svc.notify(
            [user_id],
            "comment_added",
            NotificationPayload(
                title=f"New comment {i}",
                content_item_id=uuid.uuid4(),
                source_id=str(i),
            ),
        )


# ═══════════════════════════════════════════════════════════
# Listing
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_list_and_count(client, db_session, broker):
    user = uuid.uuid4()
    await _notify(db_session, broker, user, count=3)

    r = await client.get(f"/api/v1/users/{user}/notifications", headers=as_user(user))
    assert r.status_code == 200
    rows = r.json()
    assert len(rows) == 3
    assert all(n["user_id"] == str(user) and n["read"] is False for n in rows)
    assert rows[0]["metadata"]["content_item_id"]

    r = await client.get(f"/api/v1/users/{user}/notifications/unread-count", headers=as_user(user))
    assert r.json() == {"user_id": str(user), "unread": 3}


@pytest.mark.asyncio
async def test_limit_bounds(client):
    user = uuid.uuid4()
    r = await client.get(
        f"/api/v1/users/{user}/notifications", params={"limit": 0}, headers=as_user(user)
    )
    assert r.status_code == 422
    r = await client.get(
        f"/api/v1/users/{user}/notifications", params={"limit": 500}, headers=as_user(user)
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_notifications_are_private(client, db_session, broker):
    user, stranger = uuid.uuid4(), uuid.uuid4()
    await _notify(db_session, broker, user)

    r = await client.get(f"/api/v1/users/{user}/notifications", headers=as_user(stranger))
    assert r.status_code == 403
    r = await client.post(f"/api/v1/users/{user}/notifications/read-all", headers=as_user(stranger))
    assert r.status_code == 403

    r = await client.get(f"/api/v1/users/{user}/notifications", headers=as_user(user))
    notification_id = r.json()[0]["id"]
    r = await client.post(f"/api/v1/notifications/{notification_id}/read", headers=as_user(stranger))
    assert r.status_code == 404


# ═══════════════════════════════════════════════════════════
# Read state
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_mark_read(client, db_session, broker):
    user = uuid.uuid4()
    await _notify(db_session, broker, user, count=2)
    r = await client.get(f"/api/v1/users/{user}/notifications", headers=as_user(user))
    first = r.json()[0]

    r = await client.post(f"/api/v1/notifications/{first['id']}/read", headers=as_user(user))
    assert r.status_code == 200
    assert r.json()["read"] is True

    r = await client.get(f"/api/v1/users/{user}/notifications/unread-count", headers=as_user(user))
    assert r.json()["unread"] == 1

    r = await client.get(
        f"/api/v1/users/{user}/notifications",
        params={"unread_only": "true"},
        headers=as_user(user),
    )
    unread_ids = [n["id"] for n in r.json()]
    assert len(unread_ids) == 1
    assert first["id"] not in unread_ids


@pytest.mark.asyncio
async def test_mark_all_read(client, db_session, broker):
    user = uuid.uuid4()
    await _notify(db_session, broker, user, count=4)

    r = await client.post(f"/api/v1/users/{user}/notifications/read-all", headers=as_user(user))
    assert r.status_code == 200
    assert r.json() == {"user_id": str(user), "updated": 4}

    r = await client.get(f"/api/v1/users/{user}/notifications/unread-count", headers=as_user(user))
    assert r.json()["unread"] == 0
