from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from schemaforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from schemaforge.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    # Number of scoped connection pools currently open.
    pools: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    registry = request.app.state.registry
    payload = HealthResponse(status="ok", pools=len(registry))
    return success_response(request=request, data=payload.model_dump())
