"""Local, database-backed mesh address pool."""

import asyncio
import ipaddress
from typing import Optional, Dict, Any, Set

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import select, func

from vmhost.core.exceptions import MeshAddressError, MeshAddressUnavailable
from vmhost.database import build_session_maker
from vmhost.models import MeshPool, MeshAllocation
from vmhost.models.base import utcnow
from vmhost.network.mesh import MeshAllocator
from vmhost.utils.logger import get_logger
from vmhost.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()


class InvalidNetwork(MeshAddressError):
    """Invalid mesh network configuration."""

    pass


def _calculate_available_ips(cidr: str, gateway: str) -> tuple[str, str]:
    """
    Calculate the first and last assignable address of a network.

    Args:
        cidr: CIDR notation (e.g., "10.10.10.0/24")
        gateway: Gateway IP, excluded from the range

    Returns:
        Tuple of (start_ip, end_ip)

    Raises:
        InvalidNetwork: If CIDR or gateway is invalid
    """
    try:
        net = ipaddress.IPv4Network(cidr, strict=False)
        gateway_ip = ipaddress.IPv4Address(gateway)

        # Usable hosts exclude network and broadcast addresses
        available_hosts = [h for h in net.hosts() if h != gateway_ip]

        if not available_hosts:
            raise InvalidNetwork(f"No available addresses in {cidr} after excluding {gateway}")

        return (str(available_hosts[0]), str(available_hosts[-1]))

    except ValueError as e:
        raise InvalidNetwork(f"Invalid network configuration: {e}") from e


def _ip_to_int(ip: str) -> int:
    """Convert IP string to integer for range iteration."""
    return int(ipaddress.IPv4Address(ip))


def _int_to_ip(ip_int: int) -> str:
    """Convert integer back to IP string."""
    return str(ipaddress.IPv4Address(ip_int))


class LocalMeshAllocator(MeshAllocator):
    """Mesh addresses allocated from a pool stored in the local database.

    Each reserve/release runs as one transaction under an asyncio lock,
    so concurrent callers cannot be handed the same address.
    """

    def __init__(self, engine: AsyncEngine, pool_name: str, cidr: str, gateway: str):
        self.engine = engine
        self.session_maker = build_session_maker(engine)
        self.pool_name = pool_name
        self.cidr = cidr
        self.gateway = gateway
        self._lock = asyncio.Lock()

    async def ensure_pool(self) -> MeshPool:
        """Create the pool row if it does not exist yet."""
        async with self._lock, self.session_maker() as session:
            stmt = select(MeshPool).where(MeshPool.name == self.pool_name)
            result = await session.execute(stmt)
            pool = result.scalar_one_or_none()
            if pool:
                return pool

            start_ip, end_ip = _calculate_available_ips(self.cidr, self.gateway)
            pool = MeshPool(
                name=self.pool_name,
                cidr=self.cidr,
                gateway=self.gateway,
                start_ip=start_ip,
                end_ip=end_ip,
            )
            session.add(pool)
            await session.commit()
            await session.refresh(pool)

            logger.info(
                "Mesh pool created",
                extra={"pool_name": self.pool_name, "start_ip": start_ip, "end_ip": end_ip},
            )
            return pool

    async def _get_pool(self, session: AsyncSession) -> MeshPool:
        stmt = select(MeshPool).where(MeshPool.name == self.pool_name, MeshPool.is_active)
        result = await session.execute(stmt)
        pool = result.scalar_one_or_none()
        if not pool:
            raise MeshAddressError(f"Mesh pool '{self.pool_name}' not found or not active")
        return pool

    async def _active_allocations(self, session: AsyncSession, pool: MeshPool) -> Dict[str, str]:
        stmt = select(MeshAllocation).where(
            MeshAllocation.pool_id == pool.id, MeshAllocation.is_active
        )
        result = await session.execute(stmt)
        return {row.address: row.owner_id for row in result.scalars().all()}

    async def reserve(self, owner_id: str, address: Optional[str] = None) -> str:
        with tracer.start_as_current_span("service.mesh.reserve"):
            add_span_attributes(
                **{"mesh.owner_id": owner_id, "mesh.requested": address or "any"}
            )

            async with self._lock, self.session_maker() as session:
                pool = await self._get_pool(session)
                allocated = await self._active_allocations(session, pool)
                start_int = _ip_to_int(pool.start_ip)
                end_int = _ip_to_int(pool.end_ip)

                if address is not None:
                    if not start_int <= _ip_to_int(address) <= end_int:
                        raise MeshAddressError(
                            f"Address {address} is outside mesh pool range "
                            f"{pool.start_ip}-{pool.end_ip}"
                        )
                    holder = allocated.get(address)
                    if holder == owner_id:
                        return address
                    if holder is not None:
                        raise MeshAddressUnavailable(
                            f"Mesh address {address} is already in use by {holder}"
                        )
                    chosen = address
                else:
                    chosen = None
                    for ip_int in range(start_int, end_int + 1):
                        candidate = _int_to_ip(ip_int)
                        if candidate not in allocated:
                            chosen = candidate
                            break

                    if chosen is None:
                        total = end_int - start_int + 1
                        logger.error(
                            "No available mesh addresses",
                            extra={
                                "pool_name": self.pool_name,
                                "allocated": len(allocated),
                                "total": total,
                            },
                        )
                        raise MeshAddressError(
                            f"No available addresses in mesh pool '{self.pool_name}' "
                            f"({len(allocated)}/{total} allocated)"
                        )

                allocation = MeshAllocation(pool_id=pool.id, owner_id=owner_id, address=chosen)
                session.add(allocation)
                await session.commit()

            logger.info(
                "Mesh address reserved",
                extra={"owner_id": owner_id, "mesh_address": chosen, "pool_name": self.pool_name},
            )
            return chosen

    async def release(self, address: str) -> bool:
        with tracer.start_as_current_span("service.mesh.release"):
            add_span_attributes(**{"mesh.address": address})

            async with self._lock, self.session_maker() as session:
                stmt = select(MeshAllocation).where(
                    MeshAllocation.address == address, MeshAllocation.is_active
                )
                result = await session.execute(stmt)
                allocation = result.scalars().first()

                if not allocation:
                    logger.warning("Mesh address was not reserved", extra={"mesh_address": address})
                    return False

                allocation.is_active = False
                allocation.released_at = utcnow()
                session.add(allocation)
                await session.commit()

            logger.info(
                "Mesh address released",
                extra={"mesh_address": address, "owner_id": allocation.owner_id},
            )
            return True

    async def list_used(self) -> Set[str]:
        async with self.session_maker() as session:
            pool = await self._get_pool(session)
            return set(await self._active_allocations(session, pool))

    async def get_pool_stats(self) -> Dict[str, Any]:
        """Usage statistics for the pool."""
        async with self.session_maker() as session:
            pool = await self._get_pool(session)
            total = _ip_to_int(pool.end_ip) - _ip_to_int(pool.start_ip) + 1
            stmt = select(func.count(MeshAllocation.id)).where(
                MeshAllocation.pool_id == pool.id, MeshAllocation.is_active
            )
            result = await session.execute(stmt)
            allocated = result.scalar_one()

            return {
                "pool_name": pool.name,
                "cidr": pool.cidr,
                "gateway": pool.gateway,
                "total": total,
                "allocated": allocated,
                "available": total - allocated,
                "utilization_percent": round(allocated / total * 100, 2) if total else 0,
            }
