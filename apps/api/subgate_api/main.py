"""SubGate API application.

Webhook intake for five payment providers plus the small subscription
surface the frontend needs around a payment. Errors are RFC 9457
problem+json everywhere.
"""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from subgate_api.config.env import is_json_logging_enabled
from subgate_api.context import provider_var, request_id_var, transaction_id_var
from subgate_api.routers import health, subscription, webhooks
from subgate_api.routers.health import VERSION
from subgate_api.schemas import ProblemDetail
from subgate_api.utils import configure_json_logging

app = FastAPI(
    title="SubGate API",
    description="Payment webhook authenticity and subscription activation engine.",
    version=VERSION,
    docs_url="/api-docs",
    redoc_url=None,
)

# Set SUBGATE_JSON_LOGS=false to disable (defaults to true)
if is_json_logging_enabled():
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logging.getLogger(__name__).info("Structured JSON logging enabled")


# ============================================================================
# HTTP Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Emit one "http.request.completed" line per request.

    Per-request contextvars are cleared on entry and exit so values from one
    webhook never leak into the next request served by the same task.
    """
    provider_var.set("")
    transaction_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logging.getLogger(__name__).info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        provider_var.set("")
        transaction_id_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept or generate X-Request-ID, expose it to logs and the response.

    Registered last so it wraps every other middleware.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Request Validation Failed",
    429: "Too Many Requests",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _problem_response(status_code: int, problem_type: str, detail) -> JSONResponse:
    """Build an application/problem+json response tagged with the request id."""
    request_id = request_id_var.get()
    problem = ProblemDetail(
        type=f"urn:subgate:problems:{problem_type}",
        title=_STATUS_TITLES.get(status_code, f"HTTP {status_code}"),
        status=status_code,
        detail=detail,
        instance=f"urn:subgate:trace:{request_id or uuid.uuid4()}",
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP exceptions as problem+json (dict details preserved)."""
    detail = exc.detail
    if detail is None:
        detail = _STATUS_TITLES.get(exc.status_code, f"HTTP {exc.status_code}")
    return _problem_response(exc.status_code, f"http-{exc.status_code}", detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming the first failing field."""
    errors = exc.errors()
    first_error = errors[0] if errors else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")
    return _problem_response(422, "validation-error", f"Invalid field '{field}': {msg}")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.getLogger(__name__).error(
        "Unhandled exception",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
        exc_info=exc,
    )
    return _problem_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal-error",
        "An unexpected error occurred. Please try again later.",
    )


app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(subscription.router)
