# paygate/main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paygate.api.deps import GatewayContext
from paygate.api.endpoints import analytics, wrapper
from paygate.core.config import settings
from paygate.core.errors import GatewayError, error_envelope, error_response
from paygate.x402 import audit
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(context: Optional[GatewayContext] = None) -> FastAPI:
    """
    Build the gateway application.

    Without an explicit context, one is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "context", None) is None:
            app.state.context = GatewayContext.from_settings()
            logger.info(f"Gateway context initialised (database: {settings.DATABASE_URL})")
        yield

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.context = context

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
        audit.log_error(type(exc).__name__, str(exc), context={"method": request.method, "path": request.url.path})
        return JSONResponse(
            status_code=500,
            content=error_envelope("INTERNAL_SERVER_ERROR", "An unexpected error occurred", str(exc)),
        )

    app.include_router(wrapper.router, tags=["wrapper"])
    app.include_router(analytics.router, prefix=settings.API_V1_STR, tags=["analytics"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

    return app


app = create_app()
