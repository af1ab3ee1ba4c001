"""FastAPI application bootstrap and router wiring."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recordkeeper.api.dependencies.progress import get_publisher
from recordkeeper.api.routers import exports, health, imports, tags
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.services.progress_publisher import ProgressPublisher

logger = logging.getLogger(__name__)


async def collect_finished_channels(publisher: ProgressPublisher, settings: Settings) -> None:
    """Periodically drop progress channels nobody consumed after they finished."""
    while True:
        await asyncio.sleep(settings.progress_cleanup_interval_seconds)
        try:
            publisher.cleanup(settings.progress_channel_grace_seconds)
        except Exception as e:
            logger.error(f"Progress channel cleanup failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger("recordkeeper").setLevel(settings.log_level.upper())
    publisher = app.dependency_overrides.get(get_publisher, get_publisher)()
    collector = asyncio.create_task(collect_finished_channels(publisher, settings))
    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    try:
        yield
    finally:
        collector.cancel()
        with suppress(asyncio.CancelledError):
            await collector


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    # Origins come from CORS_ORIGINS (comma-separated), defaulting to local dev servers.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(imports.router, prefix="/api/import", tags=["import"])
    app.include_router(exports.router, prefix="/api/export", tags=["export"])
    app.include_router(tags.router, prefix="/api/tags", tags=["tags"])

    return app


app = create_app()
