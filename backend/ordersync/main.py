import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from ordersync.api.problem_details import (
    PROBLEM_TYPE_AUTHENTICATION,
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_UNAVAILABLE,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from ordersync.api.routes_health import router as health_router
from ordersync.api.routes_ops import router as ops_router
from ordersync.api.routes_webhooks import router as webhooks_router
from ordersync.domain.errors import AuthenticationError, DomainError, ValidationError
from ordersync.infra.logging import clear_log_context, configure_logging, update_log_context
from ordersync.infra.metrics import configure_metrics
from ordersync.infra.tracing import configure_tracing, instrument_fastapi
from ordersync.services import build_app_services
from ordersync.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("ordersync.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            request_logger.info("request")
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_latency(request.method, route_label, status_code, time.perf_counter() - start)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def create_app(app_settings, *, tracer_provider=None, services=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name="ordersync-api")
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        await state_services.open()
        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", None) or app_settings
        owns_factory = getattr(app.state, "db_session_factory", None) is None
        if owns_factory:
            app.state.db_session_factory = state_services.session_factory
        try:
            yield
        finally:
            if owns_factory:
                app.state.db_session_factory = None
            await state_services.close()

    app = FastAPI(title=app_settings.app_name, version="1.0.0", lifespan=lifespan)

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)

    # added last so it wraps all middleware
    instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return problem_details(
            request=request,
            status=400,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(AuthenticationError)
    async def authentication_exception_handler(request: Request, exc: AuthenticationError):
        return problem_details(
            request=request,
            status=401,
            title="Unauthorized",
            detail=exc.detail,
            errors=[{"field": "signature", "message": exc.reason}],
            type_=PROBLEM_TYPE_AUTHENTICATION,
        )

    @app.exception_handler(ValidationError)
    async def payload_validation_exception_handler(request: Request, exc: ValidationError):
        return problem_details(
            request=request,
            status=400,
            title="Invalid Payload",
            detail=exc.detail,
            errors=[{"field": "body", "message": exc.reason}],
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            headers=getattr(exc, "headers", None),
        )

    async def store_unavailable_handler(request: Request, exc: Exception):
        logger.warning("store_unavailable", extra={"extra": {"error_type": type(exc).__name__}})
        return problem_details(
            request=request,
            status=503,
            title="Service Unavailable",
            detail="Record store unavailable",
            type_=PROBLEM_TYPE_UNAVAILABLE,
            headers={"Retry-After": "5"},
        )

    app.add_exception_handler(OperationalError, store_unavailable_handler)
    app.add_exception_handler(PoolTimeoutError, store_unavailable_handler)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"request_id": request_id, "path": request.url.path, "error_type": type(exc).__name__}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(ops_router)
    if app_settings.metrics_enabled:
        from ordersync.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
