"""Schemas package for specification types and request/response validation."""

from vmhost.schemas.common import ResponseMessage, HealthCheckResponse
from vmhost.schemas.vm import (
    StorageLocation,
    DiskSpec,
    Volume,
    NetworkSpec,
    VmSpec,
    VolumeCreate,
    VolumeResize,
    VMCreate,
    VMUpdate,
    VMActionRequest,
    RuntimeInfo,
    VMResponse,
    ConsoleResponse,
    VMLogsResponse,
)

__all__ = [
    "ResponseMessage",
    "HealthCheckResponse",
    "StorageLocation",
    "DiskSpec",
    "Volume",
    "NetworkSpec",
    "VmSpec",
    "VolumeCreate",
    "VolumeResize",
    "VMCreate",
    "VMUpdate",
    "VMActionRequest",
    "RuntimeInfo",
    "VMResponse",
    "ConsoleResponse",
    "VMLogsResponse",
]
