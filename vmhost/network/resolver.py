"""Network Identity Resolver: NIC emulation and mesh address binding."""

import random
from dataclasses import dataclass
from typing import Optional

from vmhost.core.exceptions import MeshAddressError
from vmhost.models.vm import NicModel
from vmhost.network.mesh import MeshAllocator
from vmhost.network.tap import TapError, TapManager, tap_name
from vmhost.schemas.vm import MESH_AUTO, NetworkSpec
from vmhost.utils.logger import get_logger

logger = get_logger(__name__)

NIC_DEVICES = {
    NicModel.VIRTIO: "virtio-net-pci",
    NicModel.E1000: "e1000",
    NicModel.RTL8139: "rtl8139",
}


def generate_mac() -> str:
    """Random MAC in the QEMU locally administered range."""
    return "52:54:00:{:02x}:{:02x}:{:02x}".format(
        random.randint(0, 255), random.randint(0, 255), random.randint(0, 255)
    )


@dataclass
class ResolvedNetwork:
    """Concrete network attachment for one hypervisor launch."""

    device: str
    mac_address: str
    mesh_address: Optional[str] = None
    tap_device: Optional[str] = None

    @property
    def mode(self) -> str:
        return "tap" if self.tap_device else "user"


class NetworkResolver:
    """Turns a :class:`NetworkSpec` into the device the hypervisor emulates.

    Mesh addresses are static attributes of a VM: they are reserved on
    Create/Update and only released on Delete (or when Update clears them).
    TAP devices, by contrast, live only while the VM runs.
    """

    def __init__(
        self,
        allocator: Optional[MeshAllocator] = None,
        tap_manager: Optional[TapManager] = None,
    ):
        self.allocator = allocator
        self.tap_manager = tap_manager

    @staticmethod
    def device_for(model: NicModel) -> str:
        return NIC_DEVICES[model]

    async def assign_mesh(self, owner_id: str, requested: str) -> str:
        """Reserve a mesh address for ``owner_id``; ``requested`` is 'auto' or an address."""
        if self.allocator is None:
            raise MeshAddressError("No mesh address allocator is configured")
        address = None if requested == MESH_AUTO else requested
        return await self.allocator.reserve(owner_id, address)

    async def release_mesh(self, address: str) -> bool:
        """Return a mesh address to the pool."""
        if self.allocator is None:
            return False
        return await self.allocator.release(address)

    async def resolve(self, vm_name: str, network: NetworkSpec) -> ResolvedNetwork:
        """Resolve the NIC device, attaching a TAP device when the VM has a mesh address.

        TAP failures fall back to user-mode networking; the guest can still
        configure its mesh address manually.
        """
        resolved = ResolvedNetwork(
            device=self.device_for(network.model),
            mac_address=network.mac_address,
            mesh_address=network.mesh_address,
        )

        if network.mesh_address and self.tap_manager is not None:
            tap = tap_name(vm_name)
            try:
                await self.tap_manager.setup(tap, network.mesh_address)
                resolved.tap_device = tap
            except TapError as e:
                logger.warning(
                    "TAP setup failed, falling back to user-mode networking",
                    extra={"vm_name": vm_name, "tap": tap, "error": str(e)},
                )

        return resolved

    async def unresolve(self, resolved: ResolvedNetwork) -> None:
        """Tear down what :meth:`resolve` set up on the host."""
        if resolved.tap_device and self.tap_manager is not None:
            await self.tap_manager.teardown(resolved.tap_device, resolved.mesh_address)
