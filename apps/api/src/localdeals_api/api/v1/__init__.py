from fastapi import APIRouter

from .endpoints import (
    claims,
    deals,
    health,
    observability,
    points,
    redemption,
    vendor,
    webhooks,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(claims.router)
router.include_router(redemption.router)
router.include_router(vendor.router)
router.include_router(deals.router)
router.include_router(points.router)
router.include_router(webhooks.router)
router.include_router(observability.router)
