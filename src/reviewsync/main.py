"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (logging, database, change
stream backend). Middleware, CORS, and routers all registered here.

The change stream backend is chosen by REVIEWSYNC_CHANGE_STREAM_BACKEND:
- redis: services PUBLISH to Redis, the WebSocket relay SUBSCRIBEs there
- memory: one in-process broker plays both parts (dev and tests)
Either way routes find them on app.state.publisher / app.state.transport.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reviewsync import __version__
from reviewsync.api import api_router
from reviewsync.config import settings
from reviewsync.logging_config import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    configure_logging()
    logger.info(
        "reviewsync.starting",
        version=__version__,
        environment=settings.environment,
        change_stream=settings.change_stream_backend,
        port=settings.port,
    )

    broker = None
    if settings.change_stream_backend == "memory":
        from reviewsync.realtime.memory import MemoryChangeBroker

        broker = MemoryChangeBroker()
        app.state.publisher = broker
        app.state.transport = broker
    else:
        from reviewsync.realtime.pubsub import (
            RedisChangePublisher,
            RedisChangeTransport,
            init_redis,
        )

        try:
            await init_redis()
            logger.info("reviewsync.redis_connected", url=settings.redis_url)
        except Exception as e:
            logger.warning("reviewsync.redis_unavailable", error=str(e))
            # Redis is optional — mutations still commit, subscribers
            # reconcile once it is back
        app.state.publisher = RedisChangePublisher()
        app.state.transport = RedisChangeTransport()

    from reviewsync.db.engine import engine, init_models

    await init_models()

    yield

    # Shutdown
    logger.info("reviewsync.shutdown")

    if broker is not None:
        await broker.disconnect_all()
    else:
        from reviewsync.realtime.pubsub import close_redis

        await close_redis()

    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="reviewsync",
        description="Content review workflow with live change streams",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RequestId → handler

    from reviewsync.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route (change stream relay)
    from reviewsync.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: reviewsync.main:app)
app = create_app()
