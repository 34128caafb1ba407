from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from fhir_adapter.services.registry_client import get_registry_client

router = APIRouter()


@router.get("/query")
async def query_patient(
    system: str | None = Query(default=None),
    value: str | None = Query(default=None),
    registry=Depends(get_registry_client),
) -> dict[str, Any]:
    if not system or not value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Both system and value are required")

    patient = await registry.query_patient(system, value)
    if patient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="patient not found")
    return patient


@router.get("/search")
async def search_patients(request: Request, registry=Depends(get_registry_client)) -> dict[str, Any]:
    return await registry.search_patients(dict(request.query_params))
