"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .routers import analytics as analytics_router  # noqa: E402
from .routers import customers as customers_router  # noqa: E402
from .routers import etsy_oauth as etsy_oauth_router  # noqa: E402
from .routers import etsy_sync as etsy_sync_router  # noqa: E402
from .routers import listings as listings_router  # noqa: E402
from .routers import stores as stores_router  # noqa: E402
from . import schemas  # noqa: E402


def create_app() -> FastAPI:
    app = FastAPI(
        title="etsydash API",
        description="""
        etsydash is a dashboard backend for Etsy sellers.

        This API provides endpoints for:
        - Connecting Etsy shops (OAuth 2.0 with PKCE)
        - Syncing listings, receipts and customers
        - Revenue, fee and conversion analytics
        - A lightweight customer CRM (tags, notes)

        Authenticated endpoints read a JWT from the `access_token` HTTP-only cookie.
        """,
        version="1.0.0",
    )

    settings = get_settings()

    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    if settings.FRONTEND_URL not in allowed_origins:
        allowed_origins.append(settings.FRONTEND_URL)
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(etsy_oauth_router.router)
    app.include_router(etsy_sync_router.router)
    app.include_router(analytics_router.router)
    app.include_router(stores_router.router)
    app.include_router(listings_router.router)
    app.include_router(customers_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health() -> schemas.HealthResponse:
        """Unauthenticated liveness probe."""
        return schemas.HealthResponse(status="ok")

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
            "cookieAuth": {
                "type": "apiKey",
                "in": "cookie",
                "name": "access_token",
                "description": "JWT token stored in HTTP-only cookie. Format: 'Bearer <token>'",
            }
        }
        for path, methods in openapi_schema["paths"].items():
            if path == "/health":
                continue
            for operation in methods.values():
                operation.setdefault("security", [{"cookieAuth": []}])

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
