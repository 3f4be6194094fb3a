from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from schemaforge.apps.api.response import error_response, is_versioned_request
from schemaforge.core.errors import (
    DefinitionConflictError,
    LockContentionError,
    MigrationDeadlineExceeded,
    NotAppliedError,
    PartialFailure,
    SchemaForgeError,
    ScopeMismatchError,
    TableNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    504: "DEADLINE_EXCEEDED",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a {code, message, ...} dict or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def describe_schema_error(exc: SchemaForgeError) -> tuple[int, str, dict[str, Any] | None]:
    # Map the domain error taxonomy to status, code and structured details.
    if isinstance(exc, ValidationError):
        return 422, "VALIDATION_ERROR", {"violations": [violation.to_dict() for violation in exc.violations]}
    if isinstance(exc, ScopeMismatchError):
        return 403, "SCOPE_MISMATCH", None
    if isinstance(exc, TableNotFoundError):
        return 404, "TABLE_NOT_FOUND", {"table": exc.table, "database": exc.database}
    if isinstance(exc, NotAppliedError):
        return 409, "NOT_APPLIED", {"checksum": exc.checksum, "database": exc.database, "table": exc.table}
    if isinstance(exc, LockContentionError):
        return 409, "LOCK_CONTENTION", {"database": exc.database, "retryable": True}
    if isinstance(exc, DefinitionConflictError):
        return 409, "DEFINITION_CONFLICT", None
    if isinstance(exc, PartialFailure):
        return 500, "MIGRATION_PARTIAL_FAILURE", {
            "index": exc.index,
            "operation": exc.operation.to_dict(),
        }
    if isinstance(exc, MigrationDeadlineExceeded):
        return 504, "MIGRATION_DEADLINE_EXCEEDED", None
    return 500, "INTERNAL_ERROR", None


async def schema_error_handler(request: Request, exc: SchemaForgeError) -> JSONResponse:
    status_code, code, details = describe_schema_error(exc)
    if status_code >= 500:
        logger.error("schema_request_failed code=%s path=%s error=%s", code, request.url.path, exc)
    else:
        logger.info("schema_request_rejected code=%s path=%s", code, request.url.path)
    headers = {"Retry-After": "1"} if isinstance(exc, LockContentionError) else None
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Request-shape errors; definition rule violations go through schema_error_handler.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
