"""Mesh address allocator interface.

The allocator is shared with non-VM consumers (containers) in the same
address space, so callers treat it as an opaque, possibly contended service.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set


class MeshAllocator(ABC):
    """Reserve and release overlay-network addresses."""

    @abstractmethod
    async def reserve(self, owner_id: str, address: Optional[str] = None) -> str:
        """Reserve ``address`` (or any free address) for ``owner_id``.

        Raises:
            MeshAddressUnavailable: If ``address`` is held by another owner
            MeshAddressError: If the request is rejected or the allocator fails
        """

    @abstractmethod
    async def release(self, address: str) -> bool:
        """Release ``address``. Returns False if it was not reserved."""

    @abstractmethod
    async def list_used(self) -> Set[str]:
        """Addresses currently reserved by any owner."""

    async def close(self) -> None:
        """Release allocator resources."""
