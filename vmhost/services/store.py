"""Durable storage of VM specifications."""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import selectinload
from sqlmodel import select

from vmhost.database import build_session_maker

from vmhost.models import VMRecord, VolumeRecord
from vmhost.models.base import utcnow
from vmhost.schemas.vm import OS_DISK_ID, DiskSpec, NetworkSpec, VmSpec, Volume
from vmhost.utils.logger import get_logger

logger = get_logger(__name__)


def _volume_record(vm_name: str, volume_id: str, position: int, disk: DiskSpec) -> VolumeRecord:
    return VolumeRecord(
        vm_name=vm_name,
        volume_id=volume_id,
        position=position,
        is_os_disk=position == 0,
        path=disk.path,
        size_bytes=disk.size_bytes,
        format=disk.format,
        bus=disk.bus,
        storage_location=disk.storage_location,
    )


def record_to_spec(record: VMRecord) -> VmSpec:
    """Build a :class:`VmSpec` from a VM row and its volume rows."""
    os_disk = None
    extra: List[Volume] = []
    for row in sorted(record.volumes, key=lambda r: r.position):
        disk = dict(
            path=row.path,
            size_bytes=row.size_bytes,
            format=row.format,
            bus=row.bus,
            storage_location=row.storage_location,
        )
        if row.is_os_disk:
            os_disk = DiskSpec(**disk)
        else:
            extra.append(Volume(id=row.volume_id, **disk))

    if os_disk is None:
        raise ValueError(f"VM record '{record.name}' has no OS disk")

    return VmSpec(
        name=record.name,
        cpu_count=record.cpu_count,
        memory_mb=record.memory_mb,
        os_disk=os_disk,
        install_media=record.install_media,
        drivers_media=record.drivers_media,
        network=NetworkSpec(
            model=record.nic_model,
            mac_address=record.mac_address,
            mesh_address=record.mesh_address,
        ),
        extra_volumes=extra,
        auto_start=record.auto_start,
    )


class VMStore:
    """Reads and writes VM specifications; one row per VM, one per disk."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_maker = build_session_maker(engine)

    async def _get_record(self, session: AsyncSession, name: str) -> Optional[VMRecord]:
        return await session.get(
            VMRecord, name, options=[selectinload(VMRecord.volumes)]
        )

    async def save(self, spec: VmSpec) -> None:
        """Insert or replace the stored specification of ``spec.name``."""
        async with self.session_maker() as session:
            record = await self._get_record(session, spec.name)
            if record is None:
                record = VMRecord(name=spec.name, mac_address=spec.network.mac_address)

            record.cpu_count = spec.cpu_count
            record.memory_mb = spec.memory_mb
            record.install_media = spec.install_media
            record.drivers_media = spec.drivers_media
            record.nic_model = spec.network.model
            record.mac_address = spec.network.mac_address
            record.mesh_address = spec.network.mesh_address
            record.auto_start = spec.auto_start
            record.updated_at = utcnow()

            volumes = [_volume_record(spec.name, OS_DISK_ID, 0, spec.os_disk)]
            volumes += [
                _volume_record(spec.name, vol.id, position, vol)
                for position, vol in enumerate(spec.extra_volumes, start=1)
            ]
            # delete-orphan cascade removes the replaced rows
            record.volumes = volumes

            session.add(record)
            await session.commit()

        logger.debug("VM spec saved", extra={"vm_name": spec.name})

    async def delete(self, name: str) -> bool:
        """Remove a VM and its volume rows. Returns False if absent."""
        async with self.session_maker() as session:
            record = await self._get_record(session, name)
            if record is None:
                return False
            await session.delete(record)
            await session.commit()

        logger.debug("VM spec deleted", extra={"vm_name": name})
        return True

    async def get(self, name: str) -> Optional[VmSpec]:
        async with self.session_maker() as session:
            record = await self._get_record(session, name)
            return record_to_spec(record) if record else None

    async def load_all(self) -> List[VmSpec]:
        """Every stored specification, ordered by name."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(VMRecord)
                .options(selectinload(VMRecord.volumes))
                .order_by(VMRecord.name)
            )
            return [record_to_spec(record) for record in result.scalars().all()]
