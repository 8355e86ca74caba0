import logging
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
    HTTP_504_GATEWAY_TIMEOUT,
)

from dora_metrics.config import Environment, get_settings
from dora_metrics.services.databricks import DatabaseError, QueryTimeoutError
from dora_metrics.utilities.context import get_organization_name

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """
    An enumeration of error codes.
    The values are a stable contract with the dashboard frontend.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_ORGANIZATION = "MISSING_ORGANIZATION"
    INVALID_ORGANIZATION_FORMAT = "INVALID_ORGANIZATION_FORMAT"
    ORGANIZATION_ACCESS_DENIED = "ORGANIZATION_ACCESS_DENIED"
    DATABASE_UNAVAILABLE = "DATABASE_UNAVAILABLE"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DoraMetricsError(HTTPException):
    def __init__(self, status_code: int, code: ErrorCode, detail: str, details: Any = None):
        super().__init__(status_code=status_code, detail=detail)
        self.code = code
        self.details = details


class ValidationError(DoraMetricsError):
    def __init__(self, message: str, field: str | None = None, details: Any = None):
        self.field = field
        if details is None and field is not None:
            details = [{"field": field, "message": message}]
        super().__init__(
            status_code=HTTP_400_BAD_REQUEST, detail=message, code=ErrorCode.VALIDATION_ERROR, details=details
        )


class MissingOrganizationError(DoraMetricsError):
    def __init__(self):
        detail = (
            "Organization name is required. Please provide it via x-organization-name header, "
            "query parameter, or URL parameter."
        )
        super().__init__(status_code=HTTP_401_UNAUTHORIZED, detail=detail, code=ErrorCode.MISSING_ORGANIZATION)


class InvalidOrganizationFormatError(DoraMetricsError):
    def __init__(self, organization_name: str):
        self.organization_name = organization_name
        super().__init__(
            status_code=HTTP_401_UNAUTHORIZED,
            detail="Invalid organization name format.",
            code=ErrorCode.INVALID_ORGANIZATION_FORMAT,
        )


class OrganizationAccessError(DoraMetricsError):
    def __init__(self, organization_name: str):
        self.organization_name = organization_name
        detail = f"Access denied to organization: {organization_name}"
        super().__init__(status_code=HTTP_403_FORBIDDEN, detail=detail, code=ErrorCode.ORGANIZATION_ACCESS_DENIED)


def error_body(code: ErrorCode, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": True,
        "message": message,
        "code": code.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details is not None:
        body["details"] = details
    return body


def classify_exception(exc: Exception) -> tuple[int, ErrorCode, str]:
    """
    Map an exception that escaped the routes to a status, a code and a client safe message.
    Known warehouse errors are matched by type; anything else falls back to its message.
    """
    if isinstance(exc, QueryTimeoutError):
        return HTTP_504_GATEWAY_TIMEOUT, ErrorCode.TIMEOUT_ERROR, "Request timeout"
    if isinstance(exc, DatabaseError):
        return HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.DATABASE_UNAVAILABLE, "Database service temporarily unavailable"

    message = str(exc).lower()
    if isinstance(exc, TimeoutError) or "timeout" in message or "timed out" in message:
        return HTTP_504_GATEWAY_TIMEOUT, ErrorCode.TIMEOUT_ERROR, "Request timeout"
    if "databricks" in message or "econnrefused" in message or "connection refused" in message:
        return HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.DATABASE_UNAVAILABLE, "External service unavailable"
    return HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR, "Internal server error"


def _is_production() -> bool:
    return get_settings().ENV == Environment.prod


def add_exception_handlers(app):
    @app.exception_handler(DoraMetricsError)
    async def dora_metrics_exception_handler(request: Request, exc: DoraMetricsError):
        logger.warning(
            "%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.code.value, exc.detail
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, str(exc.detail), exc.details),
            headers=exc.headers,
        )

    @app.exception_handler(DatabaseError)
    async def database_exception_handler(request: Request, exc: DatabaseError):
        status_code, code, message = classify_exception(exc)
        logger.error(
            "%s %s warehouse failure: %s %s", request.method, request.url.path, status_code, code.value, exc_info=exc
        )
        details = None if _is_production() else {"originalError": str(exc)}
        return JSONResponse(status_code=status_code, content=error_body(code, message, details))

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"] if part not in ("query", "path", "header")),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning("%s %s failed validation: %s", request.method, request.url.path, details)
        return JSONResponse(
            status_code=HTTP_400_BAD_REQUEST,
            content=error_body(ErrorCode.VALIDATION_ERROR, "Request validation failed", details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == HTTP_404_NOT_FOUND:
            code, message = ErrorCode.ROUTE_NOT_FOUND, f"Route {request.method} {request.url.path} not found"
        else:
            code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
            message = str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content=error_body(code, message), headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        status_code, code, message = classify_exception(exc)
        logger.error(
            "%s %s failed for organization %s: %s %s",
            request.method,
            request.url.path,
            get_organization_name(),
            status_code,
            code.value,
            exc_info=exc,
        )
        details = None
        if not _is_production():
            details = {
                "originalError": str(exc),
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            }
        return JSONResponse(status_code=status_code, content=error_body(code, message, details))
