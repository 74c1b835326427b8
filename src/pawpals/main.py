"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pawpals.config import get_settings
from pawpals.database import close_db, create_tables, get_session_factory, init_db
from pawpals.gamification.level_thresholds import validate_level_thresholds
from pawpals.gamification.mission_router import router as missions_router
from pawpals.gamification.router import router as gamification_router
from pawpals.gamification.seed import seed_catalog
from pawpals.health.router import router as health_router
from pawpals.middleware import setup_middleware
from pawpals.notifications.delivery import close_delivery_router
from pawpals.notifications.navigation import validate_navigation_registry
from pawpals.notifications.router import router as notifications_router
from pawpals.redis_client import close_redis, get_redis, init_redis
from pawpals.ws.bridge import PubSubBridge
from pawpals.ws.manager import manager
from pawpals.ws.router import router as ws_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()

    # Static tables must be sound before serving anything
    validate_level_thresholds()
    validate_navigation_registry()

    await init_db(settings.database_url)
    await create_tables()
    await init_redis(settings.redis_url)

    # A broken catalog must stop startup rather than serve without badges
    if settings.seed_catalog_on_startup:
        async with get_session_factory()() as db:
            await seed_catalog(db)
        logger.info("Badge and mission catalog seeded")

    manager.max_connections_per_user = settings.ws_max_connections_per_user
    manager.presence_ttl_seconds = settings.ws_presence_ttl_seconds
    redis = get_redis()
    manager.attach_redis(redis)

    # Worker -> socket forwarding
    bridge = PubSubBridge(redis)
    bridge_task = asyncio.create_task(bridge.start())

    yield

    await bridge.stop()
    bridge_task.cancel()
    try:
        await bridge_task
    except asyncio.CancelledError:
        pass

    await close_delivery_router()
    manager.attach_redis(None)
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="PawPals Gamification API",
        description="Points, streaks, badges, levels, missions and notification delivery for PawPals",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(gamification_router)
    app.include_router(missions_router)
    app.include_router(notifications_router)
    app.include_router(ws_router)

    return app


app = create_app()
