"""
Order Fulfillment Server
========================
FastAPI server for the storefront fulfillment core:
- Checkout with idempotency and server-side amount validation
- Card, wallet and redirect payment providers
- Verified provider webhooks with manual-review flagging
- Admin soft delete / restore / hard delete for orders and bookings
- Background reconciliation sweep
- Health monitoring

pip install fastapi uvicorn pydantic structlog
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.container import Container, ServerConfig, build_container
from api.routes import router
from errors import FulfillmentError

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
)

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"
START_TIME = datetime.now(timezone.utc)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    providers: list[str]
    storage: str
    reconciliation: dict


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the application.

    Tests pass a prebuilt container; otherwise one is built from the
    environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        owned = container is None
        active = container or await build_container()
        app.state.container = active
        logger.info("server_starting", version=VERSION, env=active.config.ENV)
        active.sweep.start()

        yield

        logger.info("server_shutting_down")
        if owned:
            await active.close()
        else:
            await active.sweep.stop()
            await active.notifier.drain()

    app = FastAPI(
        title="Order Fulfillment",
        description="Checkout, payment reconciliation and order administration",
        version=VERSION,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    config = container.config if container is not None else ServerConfig()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("x-request-id") or str(uuid4())[:8]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, **exc.to_dict())
        else:
            logger.info("request_rejected", path=request.url.path, error=exc.code, status=exc.http_status)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "detail": "Invalid request", "errors": errors},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        active: Container = request.app.state.container
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
            providers=active.providers.tags,
            storage="postgres" if active.database is not None else "memory",
            reconciliation=active.sweep.get_stats(),
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        return {"ready": getattr(request.app.state, "container", None) is not None}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    config = ServerConfig()
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.ENV == "development",
        log_level="info",
    )
