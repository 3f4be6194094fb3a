from __future__ import annotations

from typing import Any

from schemaforge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Unknown scope: galaxy"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing X-Role header"),
    403: _response("Forbidden", "SCOPE_MISMATCH", "Tenant scope requires an explicit tenantId"),
    404: _response("Not found", "TABLE_NOT_FOUND", "Table invoices is not defined in eam_tenant_acme"),
    409: _response(
        "Conflict",
        "LOCK_CONTENTION",
        "Migration lock for eam_tenant_acme not acquired within 5s",
        details={"retryable": True},
    ),
    422: _response(
        "Definition rejected",
        "VALIDATION_ERROR",
        "Table definition failed validation",
        details={"violations": [{"field": "fields[0].options", "rule": "options", "message": "must be a non-empty list"}]},
    ),
    500: _response("Internal error", "MIGRATION_PARTIAL_FAILURE", "Operation #1 add_column invoices.amount failed"),
    504: _response("Deadline exceeded", "MIGRATION_DEADLINE_EXCEEDED", "Migration exceeded 30s and was rolled back"),
}
