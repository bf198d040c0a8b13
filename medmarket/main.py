from fastapi import FastAPI
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError

from medmarket.cache.cache_service import redis_cache
from medmarket.core.config import settings
from medmarket.core.logger import setup_logging
from medmarket.middleware.cors import configure_cors
from medmarket.middleware.logging import RequestLoggerMiddleware
from medmarket.middleware.auth import JWTMiddleware
from medmarket.middleware import error_handler

# Routers
from medmarket.routers import health as health_router
from medmarket.routers import auth as auth_router
from medmarket.routers import rest as rest_router
from medmarket.routers import functions as functions_router
from medmarket.routers import storage as storage_router
from medmarket.routers import realtime as realtime_router
from medmarket.routers import data as data_router
from medmarket.routers import appointments as appointments_router
from medmarket.routers import shifts as shifts_router
from medmarket.routers import notifications as notifications_router
from medmarket.routers import reviews as reviews_router
from medmarket.routers import compliance as compliance_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    setup_logging()
    description = (
        "MedMarket Backend API.\n\n"
        "Healthcare marketplace connecting patients, specialists and clinics: "
        "table access, named functions, storage and realtime change feeds."
    )

    openapi_tags = [
        {"name": "authentication", "description": "Register, login, refresh and logout."},
        {"name": "tables", "description": "Row-scoped table access with filters, ordering and paging."},
        {"name": "functions", "description": "Named server functions (booking, matching, triage, queues)."},
        {"name": "storage", "description": "File uploads, signed URLs and public media."},
        {"name": "realtime", "description": "WebSocket change feeds per table."},
        {"name": "data", "description": "CSV import and export."},
        {"name": "appointments", "description": "Appointment lifecycle for patients and specialists."},
        {"name": "shifts", "description": "Locum shift marketplace."},
        {"name": "notifications", "description": "In-app notifications."},
        {"name": "reviews", "description": "Verified specialist reviews."},
        {"name": "compliance", "description": "Data exports and HIPAA access audits."},
        {"name": "health", "description": "Health checks and service status endpoints."},
    ]

    app = FastAPI(
        title=f"{settings.APP_NAME} Backend API",
        version="0.1.0",
        description=description,
        openapi_tags=openapi_tags,
    )

    # Middleware
    configure_cors(app)
    app.add_middleware(RequestLoggerMiddleware)
    app.add_middleware(JWTMiddleware)

    # Exception handlers
    app.add_exception_handler(FastAPIHTTPException, error_handler.http_exception_handler)
    app.add_exception_handler(RequestValidationError, error_handler.validation_exception_handler)
    app.add_exception_handler(Exception, error_handler.unhandled_exception_handler)

    # Include routers
    app.include_router(health_router.router)
    app.include_router(auth_router.router)
    app.include_router(rest_router.router)
    app.include_router(functions_router.router)
    app.include_router(storage_router.router)
    app.include_router(realtime_router.router)
    app.include_router(data_router.router)
    app.include_router(appointments_router.router)
    app.include_router(shifts_router.router)
    app.include_router(notifications_router.router)
    app.include_router(reviews_router.router)
    app.include_router(compliance_router.router)

    @app.on_event("shutdown")
    async def close_cache():
        await redis_cache.close()

    return app


app = create_app()
