from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api.app.api.v1.routes.admin import router as admin_router
from apps.api.app.api.v1.routes.auth import router as auth_router
from apps.api.app.api.v1.routes.billing import router as billing_router
from apps.api.app.api.v1.routes.health import router as health_router
from apps.api.app.api.v1.routes.wallet import router as wallet_router
from apps.api.app.api.v1.routes.webhooks import router as webhooks_router
from apps.api.app.core.config import get_settings
from apps.api.app.core.logging import configure_logging
from apps.api.app.db.session import dispose_engine
from apps.api.app.services.billing.errors import BillingError

_LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        yield
    finally:
        await dispose_engine()


async def _billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    content = {"error": exc.code}
    if exc.status_code < 500:
        content["detail"] = str(exc)
    else:
        _LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=content)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg")} for error in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "invalid_input", "detail": errors})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    _LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "server_error"})


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="Callwallet API", version="0.1.0", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api_cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BillingError, _billing_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(health_router, prefix="/api/v1")
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(wallet_router, prefix="/api/v1")
    app.include_router(billing_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")
    app.include_router(webhooks_router)
    return app


app = create_app()
