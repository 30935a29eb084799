"""VM specification types and request/response schemas."""

import ipaddress
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from vmhost.models.vm import DiskBus, ImageFormat, NicModel, VMStatus

GIB = 1024**3
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9_-]*[a-zA-Z0-9])?$")
MESH_AUTO = "auto"
OS_DISK_ID = "os"

MIN_CPUS = 1
MAX_CPUS = 64
MIN_MEMORY_MB = 128
MAX_MEMORY_MB = 262144


def validate_name(v: str) -> str:
    """Validate a VM or volume name."""
    if not NAME_PATTERN.match(v):
        raise ValueError(
            "Name must start/end with alphanumeric, "
            "can contain hyphens or underscores in between"
        )
    return v


def validate_mesh_request(v: Optional[str], allow_clear: bool = False) -> Optional[str]:
    """Validate a mesh address request: 'auto', an IPv4 address, or '' to clear."""
    if v is None:
        return v
    v = v.strip()
    if v == "":
        if allow_clear:
            return v
        return None
    if v == MESH_AUTO:
        return v
    try:
        ipaddress.IPv4Address(v)
    except ValueError as e:
        raise ValueError(f"Invalid mesh address: '{v}' - must be like 10.10.10.100") from e
    return v


# Specification types (owned by the registry)


class StorageLocation(BaseModel):
    """Named directory in which image files are created."""

    name: str
    path: str
    total_bytes: Optional[int] = None
    free_bytes: Optional[int] = None


class DiskSpec(BaseModel):
    """A materialized disk image."""

    path: str
    size_bytes: int = Field(gt=0)
    format: ImageFormat = ImageFormat.QCOW2
    bus: DiskBus = DiskBus.VIRTIO
    storage_location: str


class Volume(DiskSpec):
    """Extra disk attached after the OS disk."""

    id: str


class NetworkSpec(BaseModel):
    """Guest network identity."""

    model: NicModel = NicModel.VIRTIO
    mac_address: str
    mesh_address: Optional[str] = None


class VmSpec(BaseModel):
    """Fully resolved VM specification."""

    name: str
    cpu_count: int
    memory_mb: int
    os_disk: DiskSpec
    install_media: Optional[str] = None
    drivers_media: Optional[str] = None
    network: NetworkSpec
    extra_volumes: List[Volume] = []
    auto_start: bool = False

    def volume(self, volume_id: str) -> Optional[DiskSpec]:
        """Look up the OS disk ('os') or an extra volume by id."""
        if volume_id == OS_DISK_ID:
            return self.os_disk
        for vol in self.extra_volumes:
            if vol.id == volume_id:
                return vol
        return None

    def disks(self) -> List[DiskSpec]:
        """OS disk followed by extra volumes, in attachment order."""
        return [self.os_disk, *self.extra_volumes]


# Requests


class VolumeCreate(BaseModel):
    """Schema for adding an extra volume."""

    id: str = Field(min_length=1, max_length=32, description="Volume id, unique per VM")
    size_gb: int = Field(ge=1, le=65536, description="Size in GiB")
    format: ImageFormat = ImageFormat.QCOW2
    bus: DiskBus = DiskBus.VIRTIO
    storage_location: Optional[str] = Field(
        default=None, description="Storage location name (default location if omitted)"
    )

    @field_validator("id")
    @classmethod
    def check_id(cls, v: str) -> str:
        """Validate volume id format."""
        validate_name(v)
        if v == OS_DISK_ID:
            raise ValueError(f"'{OS_DISK_ID}' is reserved for the OS disk")
        return v

    @property
    def size_bytes(self) -> int:
        return self.size_gb * GIB


class VolumeResize(BaseModel):
    """Schema for growing a volume."""

    size_gb: int = Field(ge=1, le=65536, description="New size in GiB")

    @property
    def size_bytes(self) -> int:
        return self.size_gb * GIB


class VMCreate(BaseModel):
    """Schema for creating a new VM."""

    name: str = Field(
        min_length=1,
        max_length=64,
        description="VM name",
        examples=["web01", "win-build"],
    )
    cpu_count: int = Field(
        default=1, ge=MIN_CPUS, le=MAX_CPUS, description="Number of vCPUs"
    )
    memory_mb: int = Field(
        default=1024, ge=MIN_MEMORY_MB, le=MAX_MEMORY_MB, description="Memory in MB"
    )
    disk_size_gb: int = Field(default=10, ge=1, le=65536, description="OS disk size")
    disk_format: ImageFormat = ImageFormat.QCOW2
    os_disk_bus: DiskBus = Field(
        default=DiskBus.VIRTIO, description="Use ide or sata for guests without virtio"
    )
    storage_location: Optional[str] = None
    install_media: Optional[str] = Field(default=None, description="Boot ISO path")
    drivers_media: Optional[str] = Field(default=None, description="Drivers ISO path")
    nic_model: NicModel = NicModel.VIRTIO
    mesh_address: Optional[str] = Field(
        default=None, description="'auto' or an IPv4 address on the mesh network"
    )
    extra_volumes: List[VolumeCreate] = []
    auto_start: bool = False

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        """Validate VM name format."""
        return validate_name(v)

    @field_validator("install_media", "drivers_media")
    @classmethod
    def blank_media_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("mesh_address")
    @classmethod
    def check_mesh_address(cls, v: Optional[str]) -> Optional[str]:
        return validate_mesh_request(v)

    @model_validator(mode="after")
    def check_volume_ids(self) -> "VMCreate":
        """Volume ids must be unique within the VM."""
        ids = [vol.id for vol in self.extra_volumes]
        if len(ids) != len(set(ids)):
            raise ValueError("Volume ids must be unique")
        return self

    @property
    def disk_size_bytes(self) -> int:
        return self.disk_size_gb * GIB


class VMUpdate(BaseModel):
    """Schema for updating a stopped VM. Omitted fields are left unchanged.

    For media paths and the mesh address an empty string clears the value.
    """

    cpu_count: Optional[int] = Field(default=None, ge=MIN_CPUS, le=MAX_CPUS)
    memory_mb: Optional[int] = Field(default=None, ge=MIN_MEMORY_MB, le=MAX_MEMORY_MB)
    disk_size_gb: Optional[int] = Field(
        default=None, ge=1, le=65536, description="Grow the OS disk"
    )
    os_disk_bus: Optional[DiskBus] = None
    install_media: Optional[str] = None
    drivers_media: Optional[str] = None
    nic_model: Optional[NicModel] = None
    mesh_address: Optional[str] = None
    auto_start: Optional[bool] = None

    @field_validator("mesh_address")
    @classmethod
    def check_mesh_address(cls, v: Optional[str]) -> Optional[str]:
        return validate_mesh_request(v, allow_clear=True)


class VMActionRequest(BaseModel):
    """Schema for lifecycle actions."""

    action: str = Field(pattern="^(start|stop)$", examples=["start", "stop"])


# Responses


class RuntimeInfo(BaseModel):
    """Snapshot of a VM's runtime state."""

    status: VMStatus
    pid: Optional[int] = None
    console_port: Optional[int] = None
    websocket_port: Optional[int] = None
    tap_device: Optional[str] = None
    started_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class VMResponse(BaseModel):
    """Schema for VM response."""

    spec: VmSpec
    runtime: RuntimeInfo

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def status(self) -> VMStatus:
        return self.runtime.status


class ConsoleResponse(BaseModel):
    """Console endpoint of a running VM."""

    name: str
    console_port: Optional[int]
    websocket_port: Optional[int]


class VMLogsResponse(BaseModel):
    """Tail of a VM's hypervisor log."""

    name: str
    logs: str
