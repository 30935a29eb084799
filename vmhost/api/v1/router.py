"""Main router for API v1."""

from fastapi import APIRouter

from vmhost.api.v1.endpoints import health, storage, vms

# Create main API v1 router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"],
)

api_router.include_router(
    vms.router,
    prefix="/vms",
    tags=["VMs"],
)

api_router.include_router(
    storage.router,
    prefix="/storage",
    tags=["Storage"],
)
