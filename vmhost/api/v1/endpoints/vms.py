"""VM management endpoints.

Domain errors raised by the registry are turned into JSON responses by the
application-level :class:`VMHostError` handler.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, Query, status

from vmhost.api.deps import get_registry
from vmhost.schemas import (
    ConsoleResponse,
    ResponseMessage,
    RuntimeInfo,
    VMActionRequest,
    VMCreate,
    VMLogsResponse,
    VMResponse,
    VMUpdate,
    VolumeCreate,
    VolumeResize,
)
from vmhost.services.registry import VMRegistry
from vmhost.utils.context import set_context
from vmhost.utils.logger import get_logger
from vmhost.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()

router = APIRouter()

Registry = Annotated[VMRegistry, Depends(get_registry)]


@router.get(
    "",
    response_model=List[VMResponse],
    summary="List VMs",
    description="List every VM with its current runtime state.",
)
async def list_vms(registry: Registry):
    """List VMs ordered by name."""
    return registry.list()


@router.post(
    "",
    response_model=VMResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new VM",
    description="Create a VM and its disk images. The VM is registered as stopped.",
)
async def create_vm(vm_data: VMCreate, registry: Registry):
    """Create a new VM."""
    with tracer.start_as_current_span("api.vm.create"):
        set_context(vm_name=vm_data.name, action="vm.create")
        add_span_attributes(
            **{
                "vm.name": vm_data.name,
                "vm.cpu_count": vm_data.cpu_count,
                "vm.memory_mb": vm_data.memory_mb,
            }
        )
        return await registry.create(vm_data)


@router.get(
    "/{name}",
    response_model=VMResponse,
    summary="Get VM details",
)
async def get_vm(name: str, registry: Registry):
    """Get VM specification and runtime state."""
    return registry.get(name)


@router.put(
    "/{name}",
    response_model=VMResponse,
    summary="Update VM",
    description="Change the specification of a stopped VM. Takes effect on next start.",
)
async def update_vm(name: str, vm_data: VMUpdate, registry: Registry):
    """Update a stopped VM."""
    with tracer.start_as_current_span("api.vm.update"):
        set_context(vm_name=name, action="vm.update")
        return await registry.update(name, vm_data)


@router.delete(
    "/{name}",
    response_model=ResponseMessage,
    summary="Delete VM",
    description="Delete a stopped VM and all of its disk images.",
)
async def delete_vm(name: str, registry: Registry):
    """Delete a VM."""
    with tracer.start_as_current_span("api.vm.delete"):
        set_context(vm_name=name, action="vm.delete")
        await registry.delete(name)
        return ResponseMessage(message=f"VM '{name}' deleted")


@router.post(
    "/{name}/action",
    response_model=RuntimeInfo,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start or stop a VM",
    description=(
        "Returns once the VM is starting or stopping. Poll the VM to observe "
        "the transition to running, stopped or error."
    ),
)
async def vm_action(name: str, action: VMActionRequest, registry: Registry):
    """Run a lifecycle action."""
    with tracer.start_as_current_span(f"api.vm.{action.action}"):
        set_context(vm_name=name, action=f"vm.{action.action}")
        logger.info("VM action requested", extra={"vm_name": name, "vm_action": action.action})

        if action.action == "start":
            return await registry.start(name)
        return await registry.stop(name)


@router.get(
    "/{name}/console",
    response_model=ConsoleResponse,
    summary="Get console endpoint",
    description="Console (VNC) and websocket ports; null unless the VM is starting or running.",
)
async def get_console(name: str, registry: Registry):
    return registry.get_console(name)


@router.get(
    "/{name}/logs",
    response_model=VMLogsResponse,
    summary="Get VM logs",
)
async def get_logs(
    name: str,
    registry: Registry,
    lines: int = Query(200, ge=1, le=10000, description="Number of trailing lines"),
):
    """Tail of the hypervisor log."""
    return VMLogsResponse(name=name, logs=registry.read_log(name, lines))


@router.post(
    "/{name}/volumes",
    response_model=VMResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a volume",
)
async def add_volume(name: str, volume: VolumeCreate, registry: Registry):
    """Create and attach an extra volume to a stopped VM."""
    with tracer.start_as_current_span("api.volume.add"):
        set_context(vm_name=name, action="vm.volume.add")
        add_span_attributes(**{"vm.name": name, "volume.id": volume.id})
        return await registry.add_volume(name, volume)


@router.delete(
    "/{name}/volumes/{volume_id}",
    response_model=VMResponse,
    summary="Remove a volume",
)
async def remove_volume(name: str, volume_id: str, registry: Registry):
    """Detach an extra volume and delete its image."""
    with tracer.start_as_current_span("api.volume.remove"):
        set_context(vm_name=name, action="vm.volume.remove")
        return await registry.remove_volume(name, volume_id)


@router.post(
    "/{name}/volumes/{volume_id}/resize",
    response_model=VMResponse,
    summary="Grow a volume",
    description="Grow an extra volume, or the OS disk with volume id 'os'. Shrinking is rejected.",
)
async def resize_volume(name: str, volume_id: str, resize: VolumeResize, registry: Registry):
    with tracer.start_as_current_span("api.volume.resize"):
        set_context(vm_name=name, action="vm.volume.resize")
        return await registry.resize_volume(name, volume_id, resize.size_bytes)
