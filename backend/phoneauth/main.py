import logging
import os
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from phoneauth.api.auth import router as auth_router
from phoneauth.core.api_response import error_response_payload, failure_response_payload, get_request_id
from phoneauth.core.config import load_settings
from phoneauth.core.container import AuthContainer, build_container
from phoneauth.core.errors import AuthFailureError, ErrorKind

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _count_error(request: Request, code: str) -> None:
    container: AuthContainer | None = getattr(request.app.state, "container", None)
    if container is not None:
        container.metrics.increment(
            "http_errors_total",
            code=code,
            path=request.url.path,
            method=request.method.upper(),
        )


def create_app(container: AuthContainer | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.container is None
        if owned:
            settings = load_settings()
            logging.getLogger().setLevel(settings.log_level)
            app.state.container = build_container(settings)
        yield
        if owned:
            app.state.container.close()
            app.state.container = None

    app = FastAPI(title="Phone Auth API", lifespan=lifespan)
    app.state.container = container
    app.include_router(auth_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        request.state.request_id = request_id
        started_at = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started_at) * 1000
        response.headers["X-Request-ID"] = request_id
        active: AuthContainer | None = request.app.state.container
        if active is not None and request.url.path != "/metrics/prometheus":
            active.metrics.increment(
                "http_requests_total",
                method=request.method.upper(),
                path=request.url.path,
                status=str(response.status_code),
            )
        logger.info(
            "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    @app.exception_handler(AuthFailureError)
    async def auth_failure_handler(request: Request, exc: AuthFailureError):
        failure = exc.failure
        _count_error(request, str(failure.http_status))
        headers = {}
        if failure.kind == ErrorKind.RATE_LIMITED and failure.details.get("retry_after") is not None:
            headers["Retry-After"] = str(failure.details["retry_after"])
        elif failure.http_status == 401:
            headers["WWW-Authenticate"] = "Bearer"
        return JSONResponse(
            status_code=failure.http_status,
            content=failure_response_payload(request, failure),
            headers=headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        message = detail if isinstance(detail, str) else "Request failed"
        _count_error(request, str(exc.status_code))
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response_payload(
                request,
                code=f"http_{exc.status_code}",
                message=message,
                details=detail,
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        _count_error(request, "422")
        return JSONResponse(
            status_code=422,
            content=error_response_payload(
                request,
                code="validation_error",
                message="Validation error",
                details=[
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ],
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        _count_error(request, "500")
        logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=error_response_payload(
                request,
                code=ErrorKind.INTERNAL.value,
                message="Internal server error",
            ),
        )

    @app.get("/health")
    def health(request: Request):
        return {"ok": True, "status": "ok", "request_id": get_request_id(request)}

    @app.get("/metrics/prometheus")
    def metrics_prometheus(request: Request):
        active: AuthContainer = request.app.state.container
        return PlainTextResponse(
            content=active.metrics.prometheus_text(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app


app = create_app()
