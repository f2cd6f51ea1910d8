import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Iterable

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from glasswallet.api.envelope import error_response
from glasswallet.api.routes_ai import router as ai_router
from glasswallet.api.routes_analytics import router as analytics_router
from glasswallet.api.routes_credit import router as credit_router
from glasswallet.api.routes_health import router as health_router
from glasswallet.api.routes_integrate import router as integrate_router
from glasswallet.api.routes_leads import router as leads_router
from glasswallet.api.routes_oauth import router as oauth_router
from glasswallet.api.routes_outbox import router as outbox_router
from glasswallet.api.routes_pixels import router as pixels_router
from glasswallet.api.routes_rules import router as rules_router
from glasswallet.domain.errors import BusinessLogicError, DomainError, RateLimitError
from glasswallet.infra.db import create_all_tables, dispose_engine, get_engine, get_session_factory
from glasswallet.infra.logging import clear_log_context, configure_logging, update_log_context
from glasswallet.infra.metrics import configure_metrics
from glasswallet.infra.security import RateLimiter, resolve_client_key
from glasswallet.infra.tracing import configure_tracing, instrument_fastapi, instrument_sqlalchemy
from glasswallet.services import AppServices, build_app_services
from glasswallet.settings import settings

logger = logging.getLogger(__name__)

INTEGRATION_PREFIX = "/integrate"
_BUCKETS = ("leads", "rules", "credit", "pixels", "integrate", "oauth", "ai", "analytics", "outbox")


def _resolve_log_identity(request: Request) -> dict[str, str]:
    context: dict[str, str] = {}
    user_id = getattr(request.state, "current_user_id", None)
    if user_id:
        context["user_id"] = str(user_id)
    if request.url.path.startswith(INTEGRATION_PREFIX):
        context["auth_method"] = "client_credentials"
    elif user_id:
        context["auth_method"] = "api_key"
    return context


def _bucket_for_path(path: str) -> str:
    segment = (path or "").lstrip("/").split("/", 1)[0]
    return segment if segment in _BUCKETS else "other"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("glasswallet.request")
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
            update_log_context(status_code=status_code, latency_ms=latency_ms, **_resolve_log_identity(request))
            request_logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


class IntegrationCorsMiddleware(BaseHTTPMiddleware):
    """Intake endpoints are embedded on arbitrary partner sites and answer CORS with ``*``."""

    allow_methods = "GET, POST, OPTIONS"
    allow_headers = "Content-Type, Authorization, X-API-Key, X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable):
        if not request.url.path.startswith(INTEGRATION_PREFIX):
            return await call_next(request)
        if request.method == "OPTIONS":
            response = Response(status_code=status.HTTP_204_NO_CONTENT)
        else:
            response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = self.allow_methods
        response.headers["Access-Control-Allow-Headers"] = self.allow_headers
        response.headers["Access-Control-Max-Age"] = "600"
        return response


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
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
            self.metrics.record_http_request(request.method, route_label, status_code)
            if status_code == 429:
                self.metrics.record_http_429(_bucket_for_path(request.url.path))
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global per-client ceiling; per-route limits are enforced by the ``rate_limit`` dependency."""

    def __init__(self, app: FastAPI, limiter: RateLimiter, app_settings) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.app_settings = app_settings
        self.exempt_paths = {"/healthz", "/readyz"}

    async def dispatch(self, request: Request, call_next: Callable):
        if request.method == "OPTIONS":
            return await call_next(request)
        path = request.url.path
        normalized = path.rstrip("/") or "/"
        if path in self.exempt_paths or normalized in self.exempt_paths:
            return await call_next(request)

        client = resolve_client_key(
            request,
            trust_proxy_headers=self.app_settings.trust_proxy_headers,
            trusted_proxy_ips=self.app_settings.trusted_proxy_ips,
            trusted_proxy_cidrs=self.app_settings.trusted_proxy_cidrs,
        )
        decision = await self.limiter.hit(client)
        if not decision.allowed:
            request_id = getattr(request.state, "request_id", None)
            logger.warning(
                "rate_limit_blocked",
                extra={
                    "extra": {
                        "request_id": str(request_id) if request_id else None,
                        "bucket": _bucket_for_path(path),
                        "limit_per_minute": decision.limit,
                    }
                },
            )
            return error_response(
                request,
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                code="RATE_LIMIT_EXCEEDED",
                message="Rate limit exceeded",
                details={"limit": decision.limit, "retryAfter": decision.reset_seconds},
                headers={"Retry-After": str(decision.reset_seconds)},
            )
        return await call_next(request)


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _http_error_code(status_code: int) -> str:
    if status_code == status.HTTP_404_NOT_FOUND:
        return "NOT_FOUND"
    if status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return "METHOD_NOT_ALLOWED"
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return "AUTHENTICATION_ERROR"
    return "HTTP_ERROR"


def create_app(app_settings, *, tracer_provider=None, services: AppServices | None = None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name, service_version=app_settings.app_version)
    configure_logging()
    metrics_client = services.metrics if services else configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        app.state.rate_limiter = state_services.rate_limiter
        app.state.metrics = state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        if app_settings.database_auto_create:
            await create_all_tables()
        instrument_sqlalchemy(get_engine())
        yield
        await state_services.close()
        await dispose_engine()

    app = FastAPI(title="GlassWallet API", version=app_settings.app_version, lifespan=lifespan)
    app.state.services = services
    app.state.metrics = metrics_client
    app.state.app_settings = app_settings

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RateLimitMiddleware, limiter=services.rate_limiter, app_settings=app_settings)
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Outside CORSMiddleware so intake preflights never hit the origin allow-list.
    app.add_middleware(IntegrationCorsMiddleware)

    instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="VALIDATION_ERROR",
            message="Request validation failed",
            details=errors,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        retryable = True if isinstance(exc, BusinessLogicError) and exc.retryable else None
        if exc.status_code >= 500:
            logger.warning(
                "domain_error_upstream",
                extra={"extra": {"code": exc.code, "path": request.url.path, "status_code": exc.status_code}},
            )
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
            retryable=retryable,
            headers=headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=_http_error_code(exc.status_code),
            message=exc.detail if isinstance(exc.detail, str) else "Request failed",
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
            **_resolve_log_identity(request),
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        message = "Internal server error" if app_settings.app_env == "prod" else str(exc) or error_type
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="INTERNAL_ERROR",
            message=message,
        )

    app.include_router(health_router)
    app.include_router(leads_router)
    app.include_router(rules_router)
    app.include_router(credit_router)
    app.include_router(pixels_router)
    app.include_router(integrate_router)
    app.include_router(oauth_router)
    app.include_router(ai_router)
    app.include_router(analytics_router)
    app.include_router(outbox_router)
    if app_settings.metrics_enabled:
        from glasswallet.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
