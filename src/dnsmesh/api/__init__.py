"""
Policy Query API.

FastAPI application serving indexed policies to enforcement agents.
The policy index is owned by the caller and attached to the app; the
API only ever reads it.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dnsmesh import __version__
from dnsmesh.api.middleware import RequestTimeoutMiddleware
from dnsmesh.api.routes import get_index, health_router, router
from dnsmesh.api.schemas import (
    ConditionSchema,
    ErrorResponse,
    HealthCheck,
    ObjectMetaSchema,
    PolicyResponse,
    PolicySpecSchema,
    PolicyStatusSchema,
)
from dnsmesh.api.server import PolicyQueryServer
from dnsmesh.policy.index import PolicyIndex

logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup and shutdown of the API."""
    index = getattr(app.state, "index", None)
    logger.info(
        "Starting policy query API (%d policies indexed)",
        index.size() if index is not None else 0,
    )
    yield
    logger.info("Shutting down policy query API")


# ============================================================================
# FastAPI Application
# ============================================================================


def create_app(
    index: PolicyIndex | None = None,
    request_timeout: float = 20.0,
    debug: bool = False,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        index: Policy index to serve
        request_timeout: Upper bound on handling one request, in seconds
        debug: Enable debug mode

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="dnsmesh policy API",
        description="Read-only lookup of DNS policies by selector hash",
        version=__version__,
        debug=debug,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
    )
    app.state.index = index

    if request_timeout > 0:
        app.add_middleware(RequestTimeoutMiddleware, timeout=request_timeout)

    app.include_router(health_router)
    app.include_router(router)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc) if debug else "internal server error"},
        )

    return app


__all__ = [
    "create_app",
    "get_index",
    "health_router",
    "router",
    "PolicyQueryServer",
    "RequestTimeoutMiddleware",
    # Schemas
    "ConditionSchema",
    "ErrorResponse",
    "HealthCheck",
    "ObjectMetaSchema",
    "PolicyResponse",
    "PolicySpecSchema",
    "PolicyStatusSchema",
]
