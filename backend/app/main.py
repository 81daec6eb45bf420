from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import get_settings
from backend.app.core.context import AppContext
from backend.app.core.errors import DomainError
from backend.app.core.logging import configure_logging
from backend.jobs.scheduler import shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = {"success": False, "error_code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def create_app(ctx: AppContext | None = None) -> FastAPI:
    """
    Build the HTTP app. Passing a context (tests) skips building one from
    settings; the scheduler only runs when SCHEDULER_ENABLED is set.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = ctx is None
        context = ctx or AppContext.create(get_settings())
        if owned:
            configure_logging(context.settings.LOG_LEVEL)
        app.state.ctx = context
        scheduler = start_scheduler(context) if context.settings.SCHEDULER_ENABLED else None
        logger.info("Starting %s v%s", context.settings.APP_NAME, context.settings.APP_VERSION)
        try:
            yield
        finally:
            shutdown_scheduler(scheduler)
            if owned:
                context.close()

    settings = ctx.settings if ctx else get_settings()
    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return _error(422, "validation_error", f"{where}: {first.get('msg', 'invalid request')}")

    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
