from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        components["database"] = ComponentStatus(status="error", detail=type(exc).__name__)
        status = "error"

    replay_worker = getattr(request.app.state, "deposit_replay_worker", None)
    if settings.deposit_replay_worker_enabled and replay_worker is not None:
        running = bool(getattr(replay_worker, "is_running", False))
        components["deposit_replay"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=None if running else "Deposit replay worker not running",
        )
        if not running and status != "error":
            status = "degraded"
    else:
        components["deposit_replay"] = ComponentStatus(
            status="disabled",
            detail="Deposit replay worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
