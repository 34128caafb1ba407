from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from fhir_adapter.schemas.process import ProcessOut
from fhir_adapter.services.processor import get_processor

router = APIRouter()


@router.post("/process", response_model=ProcessOut)
async def process_entry(
    entry: dict[str, Any] = Body(...),
    processor=Depends(get_processor),
) -> ProcessOut:
    if not entry.get("uid"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected Neotree entry with uid")

    outcome = await processor.process(entry)
    return ProcessOut(
        uid=outcome.uid,
        action=outcome.action,
        match_level=outcome.match_level.value,
        matched_id=outcome.matched_id,
        match_score=outcome.match_score,
        resources_created=len(outcome.response.get("entry") or []),
        response=outcome.response,
    )
