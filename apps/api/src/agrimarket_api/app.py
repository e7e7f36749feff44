from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from agrimarket_api.core.settings import settings
from agrimarket_api.db.session import async_session
from agrimarket_api.services.loyalty import get_catalog_registry
from agrimarket_api.services.loyalty.catalog_sync import load_catalog
from agrimarket_api.services.loyalty.errors import LoyaltyError
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_catalog_registry()
    async with async_session() as session:
        catalog = await load_catalog(session, registry, seed=settings.loyalty_seed_catalog_on_startup)
    app.state.catalog_registry = registry
    logger.info("Loyalty catalog ready", version=catalog.version, tiers=[tier.name for tier in catalog.tiers])

    yield

    logger.info("Loyalty API shutting down")


async def handle_loyalty_error(request: Request, exc: LoyaltyError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "Loyalty request rejected",
        path=request.url.path,
        error=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


def create_app() -> FastAPI:
    """Application factory for the AgriMarket loyalty API."""
    configure_logging(
        service_name="agrimarket-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="AgriMarket Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="agrimarket-api",
        service_version=APP_VERSION,
        environment=settings.environment,
        console_fallback=settings.tracing_console_export,
    )

    app.add_exception_handler(LoyaltyError, handle_loyalty_error)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
