from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field

from schemaforge.apps.api.deps import Principal, get_table_service, require_role
from schemaforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from schemaforge.apps.api.response import SuccessEnvelope, success_response
from schemaforge.services.migrations import MigrationOutcome
from schemaforge.services.tables import TableService


router = APIRouter(prefix="/tables", tags=["tables"], responses=DEFAULT_ERROR_RESPONSES)


class FieldDefinitionRequest(BaseModel):
    # Loosely typed on purpose: rule violations are reported by the table validator.
    name: Any = None
    label: Any = None
    type: Any = None
    required: Any = None
    isUnique: Any = None
    isIndexed: Any = None
    defaultValue: Any = None
    options: Any = None
    config: Any = None
    storagePath: Any = None

    model_config = {"extra": "forbid"}


class TableDefinitionRequest(BaseModel):
    name: Any = None
    displayName: Any = None
    category: Any = None
    storageTable: Any = None
    # Declared scope; defaults to the caller's resolved scope.
    scope: str | None = None
    fields: list[FieldDefinitionRequest] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    def definition(self) -> dict[str, Any]:
        raw = self.model_dump(exclude_unset=True, exclude={"scope"})
        raw["fields"] = [item.model_dump(exclude_unset=True) for item in self.fields]
        return raw


class MigrationResponse(BaseModel):
    record_id: int
    checksum: str
    database: str
    scope: str
    direction: str
    applied: bool
    operations: int
    reversible: bool


class TableDefinitionResponse(BaseModel):
    name: str
    displayName: str
    category: str | None = None
    storageTable: str | None = None
    fields: list[dict[str, Any]]


def _to_response(outcome: MigrationOutcome) -> MigrationResponse:
    return MigrationResponse(**outcome.to_dict())


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[MigrationResponse],
)
async def define_table(
    payload: TableDefinitionRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role("admin")),
    service: TableService = Depends(get_table_service),
) -> dict:
    outcome = await service.define_table(
        payload.definition(), context=principal.context(), scope=payload.scope
    )
    if not outcome.applied:
        # Already applied: idempotent replay, nothing created.
        response.status_code = status.HTTP_200_OK
    return success_response(request=request, data=_to_response(outcome).model_dump())


@router.put("/{name}", response_model=SuccessEnvelope[MigrationResponse])
async def update_table(
    name: str,
    payload: TableDefinitionRequest,
    request: Request,
    confirm_destructive: bool = Query(default=False),
    principal: Principal = Depends(require_role("admin")),
    service: TableService = Depends(get_table_service),
) -> dict:
    outcome = await service.update_table(
        name,
        payload.definition(),
        context=principal.context(),
        scope=payload.scope,
        confirm_destructive=confirm_destructive,
    )
    return success_response(request=request, data=_to_response(outcome).model_dump())


@router.post("/{name}/revert", response_model=SuccessEnvelope[MigrationResponse])
async def revert_table(
    name: str,
    request: Request,
    confirm_destructive: bool = Query(default=False),
    principal: Principal = Depends(require_role("admin")),
    service: TableService = Depends(get_table_service),
) -> dict:
    outcome = await service.revert_table(
        name, context=principal.context(), confirm_destructive=confirm_destructive
    )
    return success_response(request=request, data=_to_response(outcome).model_dump())


@router.delete("/{name}", response_model=SuccessEnvelope[MigrationResponse])
async def drop_table(
    name: str,
    request: Request,
    confirm_destructive: bool = Query(default=False),
    principal: Principal = Depends(require_role("admin")),
    service: TableService = Depends(get_table_service),
) -> dict:
    outcome = await service.drop_table(
        name, context=principal.context(), confirm_destructive=confirm_destructive
    )
    return success_response(request=request, data=_to_response(outcome).model_dump())


@router.get("", response_model=SuccessEnvelope[list[TableDefinitionResponse]])
async def list_tables(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    service: TableService = Depends(get_table_service),
) -> dict:
    definitions = await service.list_tables(context=principal.context())
    return success_response(request=request, data=[definition.to_dict() for definition in definitions])


@router.get("/{name}", response_model=SuccessEnvelope[TableDefinitionResponse])
async def get_table(
    name: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    service: TableService = Depends(get_table_service),
) -> dict:
    definition = await service.get_table(name, context=principal.context())
    return success_response(request=request, data=definition.to_dict())
