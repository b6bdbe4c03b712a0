"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID + request ID injection
- Request logging (with secret redaction)
- Global error handling in the public error shape {error, code, request_id}
- Security headers (HSTS, CSP upgrade-insecure-requests)
- Fixed-window rate limiting for webhook endpoints
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode, RateLimitExceededError
from app.core.logging import (
    generate_request_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    set_request_id,
)
from app.core.rate_limit import enforce_rate_limit
from app.core.redaction import describe_error, redact_string, redact_value
from app.core.trust import resolve_client_ip

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"


def get_request_id(request: Request) -> str:
    """request_id של הבקשה — נוצר ע"י CorrelationIdMiddleware"""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = generate_request_id()
        request.state.request_id = request_id
    return request_id


def _tracing_headers(request: Request) -> dict[str, str]:
    return {
        REQUEST_ID_HEADER: get_request_id(request),
        CORRELATION_ID_HEADER: get_correlation_id(),
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID and a fresh request ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        # correlation ID יכול להגיע מבחוץ (שרשור בין שירותים); request_id תמיד חדש
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        request.state.correlation_id = correlation_id
        request.state.request_id = set_request_id(generate_request_id())

        response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses (query string redacted)"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.monotonic()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": redact_value(dict(request.query_params)),
                "client_ip": resolve_client_ip(request.headers),
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(time.monotonic() - start_time, 4),
                    "error_type": type(e).__name__,
                },
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.monotonic() - start_time, 4),
            }
        )
        return response


def _rate_limit_response(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    headers = _tracing_headers(request)
    headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(get_request_id(request)),
        headers=headers,
    )


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    log_level = "error" if exc.status_code >= 500 else "warning"
    getattr(logger, log_level)(
        f"Application exception: {exc.code}",
        extra_data={
            "error_code": exc.code,
            "status_code": exc.status_code,
            "message": exc.message,
            "internal_message": redact_string(exc.internal_message or ""),
            "path": request.url.path,
        }
    )

    if isinstance(exc, RateLimitExceededError):
        return _rate_limit_response(request, exc)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(get_request_id(request)),
        headers=_tracing_headers(request),
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """שגיאות ולידציה של FastAPI (body / query) באותה צורה כמו שאר השגיאות"""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request.",
            "code": ErrorCode.VALIDATION_ERROR.value,
            "request_id": get_request_id(request),
            "fields": fields,
        },
        headers=_tracing_headers(request),
    )


_HTTP_STATUS_CODES = {
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    415: ErrorCode.UNSUPPORTED_MEDIA_TYPE,
    429: ErrorCode.RATE_LIMITED,
}


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """404/405 של ה-router וכו' — גם הם בצורת השגיאה הציבורית"""
    code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.VALIDATION_ERROR)
    if exc.status_code >= 500:
        code = ErrorCode.INTERNAL_ERROR
    headers = _tracing_headers(request)
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": str(exc.detail),
            "code": code.value,
            "request_id": get_request_id(request),
        },
        headers=headers,
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions — הטקסט נרשם אחרי מיסוך ולא חוזר ללקוח"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "error": describe_error(exc),
            "path": request.url.path,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "An unexpected error occurred",
            "code": ErrorCode.INTERNAL_ERROR.value,
            "request_id": get_request_id(request),
        },
        headers=_tracing_headers(request),
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware להוספת כותרות אבטחה לכל תשובה.

    - Content-Security-Policy: upgrade-insecure-requests
    - Strict-Transport-Security (HSTS) — מחייב את הדפדפן לגשת רק ב-HTTPS.
    - X-Content-Type-Options: nosniff — מונע MIME sniffing.

    הערה: CSP ו-HSTS מוחלים רק כשאפליקציה לא במצב DEBUG.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting לנקודות webhook — חלון קבוע לפי IP לקוח מזוהה.

    ה-IP נקבע ע"י resolve_client_ip (proxy מהימן / managed edge בלבד);
    כשאין אמון כל הבקשות חולקות את הדלי "unknown".
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 180,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = resolve_client_ip(request.headers)
        result = await enforce_rate_limit(
            f"payments:webhook:{client_ip}",
            self._max_requests,
            self._window_ms,
        )
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "retry_after_seconds": result.retry_after_seconds,
                },
            )
            return _rate_limit_response(
                request,
                RateLimitExceededError(
                    "Too many requests. Please try again later.",
                    retry_after_seconds=result.retry_after_seconds,
                ),
            )

        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
