"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from dunning_scheduler.api.dependencies import verify_api_key
from dunning_scheduler.api.errors import register_exception_handlers
from dunning_scheduler.api.middleware import RequestIDMiddleware, MetricsMiddleware
from dunning_scheduler.api.v1 import notifications, plans, scenarios
from dunning_scheduler.config import Settings, settings as default_settings
from dunning_scheduler.infrastructure.database.session import SessionLocal
from dunning_scheduler.infrastructure.observability.logging import setup_logging
from dunning_scheduler.services.runtime import QueueRuntime
from dunning_scheduler.services.scheduler import EngineDependencies, build_engine_dependencies

# Setup structured logging
setup_logging(default_settings.log_level, default_settings.service_name)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start queue workers with the app and drain them on shutdown"""
    deps: EngineDependencies = app.state.deps
    runtime = None
    if deps.settings.run_workers_in_api:
        runtime = QueueRuntime(deps)
        await runtime.start()
    app.state.runtime = runtime
    try:
        yield
    finally:
        if runtime is not None:
            await runtime.stop()
        await deps.backend.close()
        logger.info("Application shutdown complete")


def create_app(settings: Optional[Settings] = None, deps: Optional[EngineDependencies] = None) -> FastAPI:
    """Create and configure FastAPI application"""
    settings = settings or (deps.settings if deps else default_settings)
    app = FastAPI(
        title="Dunning Scheduler",
        description="Loan due-date reminder scheduling and dispatch",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.deps = deps or build_engine_dependencies(settings, SessionLocal)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    secured = [Depends(verify_api_key)]
    app.include_router(plans.router, prefix="/v1", tags=["plans"], dependencies=secured)
    app.include_router(notifications.router, prefix="/v1", tags=["notifications"], dependencies=secured)
    app.include_router(scenarios.router, prefix="/v1", tags=["test"], dependencies=secured)

    return app


app = create_app()
