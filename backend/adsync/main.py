"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import meta_sync as meta_sync_router
from .routers import meta_creatives as meta_creatives_router
from .routers import meta_connections as meta_connections_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync API",
        description="""
        adsync ingests Meta Ads performance and creative data for tenant workspaces.

        This API provides endpoints for:
        - Insights sync (daily, intraday, backfill) and sync health
        - Campaign / ad set / ad catalog refresh
        - Creative resolution (single ad and batched) and media caching
        - Meta connection validation, token refresh and default selection

        ## Authentication

        Every workspace endpoint requires the shared service key in the
        `X-Internal-Key` header. User sessions are handled upstream.
        """,
        version="1.0.0",
        license_info={
            "name": "Proprietary",
        },
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    observability = init_observability()
    logger.info("[STARTUP] Observability: %s", observability)

    ALLOWED_ORIGINS = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {ALLOWED_ORIGINS}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include all API routers
    app.include_router(meta_sync_router.router)
    app.include_router(meta_creatives_router.router)
    app.include_router(meta_connections_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Liveness check. Does not require authentication and does not touch
        the database or the Meta API.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    # Custom OpenAPI schema with the internal key security scheme
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "internalKey": {
                "type": "apiKey",
                "in": "header",
                "name": "X-Internal-Key",
                "description": "Shared service key (INTERNAL_API_KEY)",
            }
        }

        for path in openapi_schema["paths"]:
            if path == "/health":
                continue
            for method in openapi_schema["paths"][path]:
                openapi_schema["paths"][path][method].setdefault("security", [{"internalKey": []}])

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
