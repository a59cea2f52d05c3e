from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import settings
from .container import AssessmentContainer, get_container, reset_container
from .errors import AssessmentError, MethodNotAllowed, RateLimited
from .logging_config import configure_logging
from .request_context import REQUEST_ID, new_request_id
from .routes.assessment_routes import register_assessment_routes
from .routes.health_routes import register_health_routes

_log = logging.getLogger(__name__)

_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _allow_origin(request: Request) -> str:
    origins = settings.cors_origins()
    if "*" in origins:
        return "*"
    origin = request.headers.get("origin", "")
    return origin if origin in origins else origins[0]


async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    request_id = (request.headers.get("x-request-id") or "").strip()[:64] or new_request_id()
    token = REQUEST_ID.set(request_id)
    try:
        response = await call_next(request)
    finally:
        REQUEST_ID.reset(token)
    response.headers["x-request-id"] = request_id
    return response


async def preflight_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    # Every path answers OPTIONS with 204, with or without CORS request headers.
    if request.method == "OPTIONS":
        headers = dict(_PREFLIGHT_HEADERS)
        headers["Access-Control-Allow-Origin"] = _allow_origin(request)
        return Response(status_code=204, headers=headers)
    return await call_next(request)


async def _assessment_error_handler(_request: Request, exc: AssessmentError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after_sec)
    if exc.status_code >= 500:
        _log.error("assessment error %s: %s", exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg") or "Invalid request")
    detail = f"{location}: {message}" if location else message
    return JSONResponse(status_code=400, content={"error": detail})


async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 405:
        error = MethodNotAllowed()
        return JSONResponse(status_code=error.status_code, content=error.to_body(), headers=getattr(exc, "headers", None))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    _log.error("unhandled error", exc_info=(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(container: Optional[AssessmentContainer] = None) -> FastAPI:
    def _container() -> AssessmentContainer:
        return app.state.container

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        configure_logging()
        shared = getattr(_app.state, "container", None) is None
        if shared:
            _app.state.container = get_container()
        try:
            _app.state.container.start()
        except Exception:
            _log.error("queue backend startup failed; running in degraded mode", exc_info=True)
        try:
            yield
        finally:
            try:
                _app.state.container.stop()
            except Exception:
                _log.error("queue backend shutdown error", exc_info=True)
            if shared:
                # The next app in this process builds a fresh container from config.
                reset_container()
                _app.state.container = None

    app = FastAPI(title="Assessment API", version="0.1.0", lifespan=lifespan)
    app.state.container = container

    router = APIRouter()
    register_assessment_routes(router, lambda: _container().controller())
    register_health_routes(router, _container)
    app.include_router(router)

    app.add_exception_handler(AssessmentError, _assessment_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    # Middleware added later wraps earlier middleware; request ids cover preflight responses too.
    app.middleware("http")(preflight_middleware)
    app.middleware("http")(request_id_middleware)
    return app


def main() -> None:
    import uvicorn

    uvicorn.run(
        "services.assessment.app:create_app",
        factory=True,
        host=settings.env_str("HOST", "0.0.0.0"),
        port=settings.env_int("PORT", 8000),
    )
