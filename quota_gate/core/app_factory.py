"""Application factory for the FastAPI app.

Centralizes app construction (logging, admission engine, middleware, handlers,
routers, docs) so tests can build isolated instances with their own engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from quota_gate.api.routes import health_router, monitoring_router
from quota_gate.core.config import settings
from quota_gate.core.exception_handlers import setup_exception_handlers
from quota_gate.core.logging import configure_logging
from quota_gate.core.middleware import rate_limit_headers_middleware, request_id_middleware
from quota_gate.core.openapi import apply_openapi_customizations
from quota_gate.services.admission_engine import AdmissionEngine
from quota_gate.services.engine_factory import build_admission_engine

logger = logging.getLogger(__name__)


def create_app(engine: AdmissionEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        engine: Pre-built admission engine. When omitted one is built from
            settings; an invalid policy table fails here, before serving.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    admission_engine = engine or build_admission_engine(settings.rate_limit)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("admission_engine.closing")
        app.state.admission_engine.close()

    app = FastAPI(
        title="Quota Gate",
        description=(
            "Rate limiting and quota enforcement for HTTP APIs: fixed-window "
            "counters shared through Redis with an in-process fallback, "
            "per-tier policies, escalating penalties for repeat offenders and "
            "monitoring endpoints for recent violations."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    app.state.admission_engine = admission_engine

    # Middleware: the last registered runs outermost, so the request id is set
    # before the rate limit headers are written.
    app.middleware("http")(rate_limit_headers_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(monitoring_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app
