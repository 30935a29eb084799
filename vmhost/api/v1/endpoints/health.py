"""Health check endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import text

from vmhost import __version__
from vmhost.api.deps import get_registry
from vmhost.models import VMStatus
from vmhost.schemas import HealthCheckResponse
from vmhost.services.registry import VMRegistry

router = APIRouter()


@router.get("", response_model=HealthCheckResponse)
async def health_check(
    registry: Annotated[VMRegistry, Depends(get_registry)],
) -> HealthCheckResponse:
    """
    Health check endpoint.

    Returns the status of the API and database connection, plus VM counts.
    Useful for monitoring and orchestration systems.
    """
    # Check database connection
    try:
        async with registry.store.engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        database_status = "connected"
    except Exception as e:
        database_status = f"error: {str(e)}"

    vms = registry.list()

    return HealthCheckResponse(
        status="healthy" if database_status == "connected" else "degraded",
        version=__version__,
        database=database_status,
        vms=len(vms),
        running=sum(1 for vm in vms if vm.status is VMStatus.RUNNING),
    )
