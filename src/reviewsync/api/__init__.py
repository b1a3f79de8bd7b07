"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Identity comes from the X-User-Id header (see deps.get_actor_id),
so routers need no auth dependencies of their own. Health stays open.
"""

from fastapi import APIRouter

from reviewsync.api.comments import router as comments_router
from reviewsync.api.content import router as content_router
from reviewsync.api.health import router as health_router
from reviewsync.api.notifications import router as notifications_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(content_router, tags=["content", "reviews"])
api_router.include_router(notifications_router, tags=["notifications"])
api_router.include_router(comments_router, tags=["comments"])
