import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.lib.db.session import async_session_maker, get_session
from catalog.lib.health import check_database_health
from catalog.middleware import RequestIDMiddleware, TimingMiddleware
from catalog.ops.cache.redis_service import RedisService
from catalog.ops.routes.cache import router as cache_router
from catalog.ops.routes.stats import router as stats_router
from catalog.ops.routes.tree import router as tree_router
from catalog.ops.stats.middleware import MetricsMiddleware
from catalog.ops.wiring import CatalogComponents, build_components

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def install_components(app: FastAPI, components: CatalogComponents, redis_service: RedisService) -> None:
    """Expose the wired components to routes and middleware through ``app.state``."""
    app.state.settings = components.settings
    app.state.metrics = components.metrics
    app.state.notifier = components.notifier
    app.state.catalog_service = components.catalog_service
    app.state.worker = components.worker
    app.state.redis_service = redis_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {settings.app_name} in {settings.environment} mode")

    redis_service = RedisService(settings.redis_url, settings.redis_key_prefix)
    if redis_service.enabled:
        try:
            await redis_service.connect()
        except RuntimeError as e:
            logger.error(f"Redis connection failed: {e}")
            # Application startup fails if Redis is configured but unavailable
            raise

    components = build_components(settings, async_session_maker, redis_service.cache_store())
    install_components(app, components, redis_service)
    await components.worker.start()

    yield

    # Shutdown
    logger.info("Shutting down")
    await components.worker.stop()
    await redis_service.close()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan_handler)

    # Add middleware
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(TimingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request, session: AsyncSession = Depends(get_session)):
        db_health = await check_database_health(session)

        # Get Redis health if configured
        checks = {"database": db_health}
        redis_service: RedisService = request.app.state.redis_service
        redis_health = await redis_service.health_check()
        if redis_health:
            checks.update(redis_health)
        checks["flush_worker"] = {"running": request.app.state.worker.running}

        # Overall status
        all_healthy = db_health["connected"] and (not redis_service.enabled or redis_service.connected)

        return {
            "status": "healthy" if all_healthy else "degraded",
            "environment": settings.environment,
            "checks": checks,
        }

    # API routes
    app.include_router(tree_router, prefix="/api/tree", tags=["tree"])
    app.include_router(cache_router, prefix="/api/cache", tags=["cache"])
    app.include_router(stats_router, prefix="/api/stats", tags=["stats"])
    return app


app = create_app()


def serve() -> None:
    uvicorn.run("catalog.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    serve()
