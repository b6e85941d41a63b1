import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.config import APP_ENV

logger = logging.getLogger("immopay")

# request id of the request being served, "-" outside of one
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

QUIET_PATHS = ("/api/health",)


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        # JSON only: nothing here may be framed or cached
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cache-Control"] = "no-store"

        if APP_ENV == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=63072000; includeSubDomains"
            )

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        finally:
            request_id_var.reset(token)

        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        path = request.url.path
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        client_ip = request.client.host if request.client else "-"
        logger.log(
            level,
            "req_id=%s ip=%s method=%s path=%s status=%d duration=%.1fms",
            request_id,
            client_ip,
            request.method,
            path,
            response.status_code,
            elapsed_ms,
        )

        return response


def setup_logging(level: str = "INFO"):
    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s")
    )
    handler.addFilter(RequestIdFilter())

    app_logger = logging.getLogger("immopay")
    app_logger.handlers = [handler]
    app_logger.setLevel(log_level)
    app_logger.propagate = False

    # provider calls are logged by the adapters, with phone numbers masked
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
