"""Database models package."""

from vmhost.models.base import TimestampModel
from vmhost.models.vm import (
    VMRecord,
    VolumeRecord,
    VMStatus,
    DiskBus,
    NicModel,
    ImageFormat,
)
from vmhost.models.mesh import MeshPool, MeshAllocation

__all__ = [
    "TimestampModel",
    "VMRecord",
    "VolumeRecord",
    "VMStatus",
    "DiskBus",
    "NicModel",
    "ImageFormat",
    "MeshPool",
    "MeshAllocation",
]
