"""VM and volume records, plus the closed variant types used by every component."""

from enum import Enum
from typing import Optional, List
from sqlalchemy import BigInteger, Column
from sqlmodel import Field, Relationship

from vmhost.models.base import TimestampModel


class VMStatus(str, Enum):
    """Runtime state of a VM."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class DiskBus(str, Enum):
    """Bus a disk is attached to in the guest."""

    VIRTIO = "virtio"
    IDE = "ide"
    SATA = "sata"


class NicModel(str, Enum):
    """Emulated network adapter."""

    VIRTIO = "virtio"
    E1000 = "e1000"
    RTL8139 = "rtl8139"


class ImageFormat(str, Enum):
    """On-disk image format."""

    QCOW2 = "qcow2"
    RAW = "raw"

    @property
    def extension(self) -> str:
        return "qcow2" if self is ImageFormat.QCOW2 else "img"


class VMRecord(TimestampModel, table=True):
    """Durable VM specification."""

    __tablename__ = "vms"

    name: str = Field(
        primary_key=True,
        max_length=64,
        description="Unique, immutable VM name",
    )

    # Resources
    cpu_count: int = Field(default=1, description="Number of virtual CPUs")
    memory_mb: int = Field(default=1024, description="Memory size in MB")

    # Boot media
    install_media: Optional[str] = Field(default=None, description="Boot ISO path")
    drivers_media: Optional[str] = Field(
        default=None, description="Secondary ISO path (e.g. virtio drivers)"
    )

    # Network
    nic_model: NicModel = Field(default=NicModel.VIRTIO, max_length=16)
    mac_address: str = Field(max_length=17, description="Guest NIC MAC address")
    mesh_address: Optional[str] = Field(
        default=None,
        index=True,
        max_length=15,
        description="Statically assigned mesh network address",
    )

    auto_start: bool = Field(default=False, description="Start with the service")

    # Relationships
    volumes: List["VolumeRecord"] = Relationship(
        back_populates="vm",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "order_by": "VolumeRecord.position",
        },
    )


class VolumeRecord(TimestampModel, table=True):
    """Disk image attached to a VM; position 0 is the OS disk."""

    __tablename__ = "volumes"

    id: Optional[int] = Field(default=None, primary_key=True)
    vm_name: str = Field(foreign_key="vms.name", index=True, nullable=False)
    volume_id: str = Field(max_length=64, nullable=False)
    position: int = Field(default=0, nullable=False)
    is_os_disk: bool = Field(default=False)

    path: str = Field(nullable=False, description="Absolute image path")
    size_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    format: ImageFormat = Field(default=ImageFormat.QCOW2, max_length=8)
    bus: DiskBus = Field(default=DiskBus.VIRTIO, max_length=8)
    storage_location: str = Field(max_length=64, nullable=False)

    vm: Optional[VMRecord] = Relationship(back_populates="volumes")
