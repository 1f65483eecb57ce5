from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .errors import ErrorKind, MediatorError
from .idp_client import IdPClient
from .logger import setup_logging
from .mediator import AuthorizationMediator
from .routers import health_router, provision_router
from .settings import Settings, settings as default_settings

log = logging.getLogger("companion")


def _error(kind: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": kind, "message": message}, status_code=status_code)


async def _purge_loop(mediator: AuthorizationMediator, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await mediator.purge_expired()
        except Exception:
            log.exception("purge failed")
            continue
        if removed["codes"] or removed["sessions"]:
            log.info("purge codes=%s sessions=%s", removed["codes"], removed["sessions"])


def create_app(
    settings: Optional[Settings] = None,
    *,
    idp: Optional[IdPClient] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings)

    app = FastAPI(title="Companion Service")
    app.state.settings = settings
    app.state.mediator = AuthorizationMediator.from_settings(settings, idp=idp, clock=clock)

    # ----------------------------
    # Request/Response logging middleware
    # ----------------------------
    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = rid

        start = time.time()
        path = request.url.path

        # query strings are not logged: they carry authorization codes and state
        log.info(
            "REQ rid=%s method=%s path=%s client=%s",
            rid,
            request.method,
            path,
            request.client.host if request.client else None,
        )

        try:
            resp: Response = await call_next(request)
            dur_ms = int((time.time() - start) * 1000)
            log.info("RES rid=%s status=%s dur_ms=%s path=%s", rid, resp.status_code, dur_ms, path)
            resp.headers["x-request-id"] = rid
            return resp
        except Exception:
            dur_ms = int((time.time() - start) * 1000)
            log.exception("ERR rid=%s dur_ms=%s path=%s", rid, dur_ms, path)
            raise

    # ----------------------------
    # Error mapping
    # ----------------------------
    @app.exception_handler(MediatorError)
    async def mediator_error_handler(request: Request, exc: MediatorError):
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(ErrorKind.NOT_FOUND.value, "Not Found", 404)
        return _error("HTTPError", str(exc.detail), exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(ErrorKind.INVALID_REQUEST.value, "Malformed request parameters.", 400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        return _error(ErrorKind.INTERNAL.value, "Internal server error", 500)

    # ----------------------------
    # Lifecycle
    # ----------------------------
    @app.on_event("startup")
    async def startup():
        log.info(
            "startup begin base_url=%s callback_url=%s authorize_url=%s client_id=%s code_ttl=%s session_ttl=%s",
            settings.BASE_URL,
            settings.callback_url,
            settings.IDP_AUTHORIZE_URL,
            settings.IDP_CLIENT_ID,
            settings.CODE_TTL_SECONDS,
            settings.SESSION_TTL_SECONDS,
        )
        app.state.purge_task = asyncio.create_task(
            _purge_loop(app.state.mediator, settings.PURGE_INTERVAL_SECONDS)
        )
        log.info("startup complete")

    @app.on_event("shutdown")
    async def shutdown():
        task = getattr(app.state, "purge_task", None)
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app.include_router(health_router)
    app.include_router(provision_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "companion.main:app",
        host="0.0.0.0",
        port=3000,
    )
