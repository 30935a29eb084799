"""Storage location endpoints."""

from typing import Annotated, List

from fastapi import APIRouter, Depends

from vmhost.api.deps import get_registry
from vmhost.schemas import StorageLocation
from vmhost.services.registry import VMRegistry

router = APIRouter()


@router.get(
    "",
    response_model=List[StorageLocation],
    summary="List storage locations",
    description="Configured image directories with total and free capacity.",
)
async def list_storage(
    registry: Annotated[VMRegistry, Depends(get_registry)],
):
    return registry.list_storage_locations()
