from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from schemaforge.apps.api.errors import (
    http_exception_handler,
    schema_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from schemaforge.apps.api.response import API_VERSION
from schemaforge.apps.api.routes.health import router as health_router
from schemaforge.apps.api.routes.tables import router as tables_router
from schemaforge.core.config import get_settings
from schemaforge.core.errors import SchemaForgeError
from schemaforge.core.logging import configure_logging
from schemaforge.persistence.registry import ConnectionRegistry
from schemaforge.services.tables import TableService


def create_app(
    *,
    registry: ConnectionRegistry | None = None,
    table_service: TableService | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    registry = registry or ConnectionRegistry(settings=settings)
    table_service = table_service or TableService(registry, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Release every scoped pool on shutdown.
        await registry.close()

    app = FastAPI(title="schemaforge API", lifespan=lifespan)
    app.state.registry = registry
    app.state.table_service = table_service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(SchemaForgeError)
    async def _schema_error_handler(request: Request, exc: SchemaForgeError):
        return await schema_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(tables_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
