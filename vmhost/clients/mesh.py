"""Client for a remote mesh address allocator."""

import httpx
from typing import Optional, Set

from vmhost.core.exceptions import MeshAddressError, MeshAddressUnavailable
from vmhost.network.mesh import MeshAllocator
from vmhost.utils.logger import get_logger, log_timer
from vmhost.utils.telemetry import get_tracer, add_span_attributes, add_span_event

logger = get_logger(__name__)
tracer = get_tracer()


class HttpMeshAllocator(MeshAllocator):
    """Async client for the mesh allocator HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport=None):
        """Initialize client."""
        self.base_url = base_url
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def reserve(self, owner_id: str, address: Optional[str] = None) -> str:
        with tracer.start_as_current_span("mesh.reserve") as span:
            add_span_attributes(
                **{
                    "mesh.operation": "reserve",
                    "mesh.owner_id": owner_id,
                    "mesh.requested": address or "any",
                }
            )

            logger.info(
                "Reserving mesh address", extra={"owner_id": owner_id, "requested": address}
            )

            try:
                with log_timer("mesh_reserve", logger):
                    response = await self.client.post(
                        "/api/v1/mesh/reserve",
                        json={"owner_id": owner_id, "address": address},
                    )
                    response.raise_for_status()

                reserved = response.json().get("address")
                if not reserved:
                    raise MeshAddressError("Mesh allocator returned no address")

                add_span_event("mesh_reserved", {"address": reserved})
                logger.info(
                    "Mesh address reserved",
                    extra={"owner_id": owner_id, "mesh_address": reserved},
                )
                return reserved

            except httpx.HTTPStatusError as e:
                logger.error(
                    "Mesh address reservation failed",
                    extra={
                        "owner_id": owner_id,
                        "status_code": e.response.status_code,
                        "error": e.response.text,
                        "error_type": "HTTPStatusError",
                    },
                )
                span.record_exception(e)
                if e.response.status_code == 409:
                    raise MeshAddressUnavailable(
                        f"Mesh address {address} is already in use"
                    ) from e
                raise MeshAddressError(
                    f"Failed to reserve mesh address: {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                logger.error(
                    "Mesh allocator request failed",
                    extra={"owner_id": owner_id, "error": str(e), "error_type": type(e).__name__},
                )
                span.record_exception(e)
                raise MeshAddressError(f"Mesh allocator request failed: {str(e)}") from e

    async def release(self, address: str) -> bool:
        with tracer.start_as_current_span("mesh.release") as span:
            add_span_attributes(**{"mesh.operation": "release", "mesh.address": address})
            logger.info("Releasing mesh address", extra={"mesh_address": address})

            try:
                with log_timer("mesh_release", logger):
                    response = await self.client.delete(f"/api/v1/mesh/{address}")
                    response.raise_for_status()

                add_span_event("mesh_released", {"address": address})
                return True

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    logger.warning(
                        "Mesh address was not reserved",
                        extra={"mesh_address": address, "status_code": 404},
                    )
                    return False

                logger.error(
                    "Mesh address release failed",
                    extra={
                        "mesh_address": address,
                        "status_code": e.response.status_code,
                        "error": e.response.text,
                    },
                )
                span.record_exception(e)
                raise MeshAddressError(
                    f"Failed to release mesh address: {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                span.record_exception(e)
                raise MeshAddressError(f"Mesh allocator request failed: {str(e)}") from e

    async def list_used(self) -> Set[str]:
        try:
            response = await self.client.get("/api/v1/mesh/used")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MeshAddressError(f"Failed to list mesh addresses: {e.response.text}") from e
        except httpx.RequestError as e:
            raise MeshAddressError(f"Mesh allocator request failed: {str(e)}") from e

        return set(response.json().get("addresses", []))

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
