"""Main router for API v1."""

from fastapi import APIRouter

from iis_deploy.api.v1 import deploys, health

router = APIRouter(prefix="/v1")

# Include sub-routers
router.include_router(health.router, tags=["health"])
router.include_router(deploys.router, prefix="/deploys", tags=["deploys"])
