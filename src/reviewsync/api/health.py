"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies are reachable: the database, and Redis when it carries the
change stream. The in-process broker is always "ok" and reports how
many streams are connected.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reviewsync import __version__
from reviewsync.config import settings
from reviewsync.db.engine import get_db
from reviewsync.realtime.memory import MemoryChangeBroker

router = APIRouter()


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {e}"

    # Check the change stream backend
    publisher = getattr(request.app.state, "publisher", None)
    if isinstance(publisher, MemoryChangeBroker):
        checks["change_stream"] = "ok"
        checks["streams"] = publisher.subscriber_count()
    elif settings.change_stream_backend == "redis":
        try:
            from reviewsync.realtime.pubsub import get_redis

            await get_redis().ping()
            checks["change_stream"] = "ok"
        except Exception as e:
            checks["change_stream"] = f"error: {e}"
    else:
        checks["change_stream"] = "error: not initialized"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k in ("server", "database", "change_stream")
    ) else "degraded"

    return {"status": status, **checks}
