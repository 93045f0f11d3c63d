"""
Main FastAPI application for the Loan Lead Pipeline.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import events, recovery, leads, activity
from .services import Services
from .middleware.metrics import MetricsMiddleware, metrics_endpoint
from .middleware.rate_limit import RateLimitMiddleware
from config.settings import get_settings
from lead_pipeline.errors import ExternalError, PipelineError, ValidationError

logger = logging.getLogger(__name__)

TRY_AGAIN = "Something went wrong, please try again."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    services: Services = app.state.services
    settings = get_settings()
    logger.info(f"{settings.service_name} starting up...")

    db_started = False
    if not services.is_ready:
        # Initialize database (if configured)
        if settings.database_url:
            try:
                from database.session import init_db
                await init_db(settings.database_url)
                db_started = True
            except Exception as e:
                logger.warning(f"Database init failed (running with in-memory stores): {e}")
        services.initialize()

    services.start_jobs()
    logger.info(f"{settings.service_name} ready")
    yield
    logger.info(f"{settings.service_name} shutting down...")

    await services.shutdown()

    if db_started:
        from database.session import close_db
        await close_db()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=f"{settings.service_name} API",
        description="Abandoned-application recovery: re-engagement, soft credit check and dealer CRM delivery.",
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services or Services(settings=settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics middleware
    app.add_middleware(MetricsMiddleware)

    # Rate limiting middleware
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=settings.rate_limit_per_minute,
        return_link_requests_per_minute=settings.return_link_rate_limit_per_minute,
    )

    # --- Error mapping: nothing internal crosses the boundary ---
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"detail": "Invalid request."})

    @app.exception_handler(ExternalError)
    async def external_error_handler(request: Request, exc: ExternalError):
        logger.error(f"External dependency failed on {request.url.path}: {exc}")
        return JSONResponse(status_code=502, content={"detail": TRY_AGAIN})

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        logger.error(f"Pipeline error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": TRY_AGAIN})

    # --- Core routers ---
    app.include_router(events.router, prefix="/api/v1", tags=["Events"])
    app.include_router(recovery.router, prefix="/api/v1", tags=["Recovery"])
    app.include_router(leads.router, prefix="/api/v1", tags=["Leads"])
    app.include_router(activity.router, prefix="/api/v1", tags=["Activity"])

    # --- Prometheus metrics endpoint ---
    app.get("/metrics", tags=["Monitoring"])(metrics_endpoint)

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "service": settings.service_name,
            "version": settings.service_version,
            "status": "operational",
            "docs": "/docs",
        }

    # Health check
    @app.get("/health")
    async def health(request: Request):
        services: Services = request.app.state.services
        return {
            "status": "healthy" if services.is_ready else "degraded",
            "services": services.health(),
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
