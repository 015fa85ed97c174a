"""Operator snapshot of claim lifecycle and deposit webhook telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from localdeals_api.api.dependencies.security import require_operator_api_key
from localdeals_api.observability.claims import get_claims_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/claims",
    dependencies=[Depends(require_operator_api_key)],
    summary="Claim lifecycle observability snapshot",
)
async def get_claims_snapshot() -> dict[str, object]:
    return get_claims_store().snapshot().as_dict()
