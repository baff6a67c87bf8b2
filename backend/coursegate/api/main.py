"""
ASGI application for the billing and entitlement API.

Run with: uvicorn coursegate.api.main:app
"""

import logging

from fastapi import FastAPI, Request

from coursegate.api.routes import access, entitlements, payments, plans, subscriptions, webhooks
from coursegate.platform.errors import AppError, ErrorHandlerMiddleware, error_response, get_correlation_id

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="coursegate", version="1.0.0")
    app.add_middleware(ErrorHandlerMiddleware)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        correlation_id = get_correlation_id(request)
        logger.warning("Application error", extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
        })
        return error_response(exc.status_code, exc.code, exc.message, correlation_id, exc.details)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    for module in (plans, subscriptions, payments, access, entitlements, webhooks):
        app.include_router(module.router)

    return app


app = create_app()
