"""Domain exceptions for the VM lifecycle manager.

Every error carries a category telling the caller what to do next:
``input`` (fix the request), ``retry`` (transient or contended resource) or
``operator`` (host-level intervention needed). The API layer maps each
error to an HTTP status.
"""

from fastapi import status

CATEGORY_INPUT = "input"
CATEGORY_RETRY = "retry"
CATEGORY_OPERATOR = "operator"


class VMHostError(Exception):
    """Base exception for all lifecycle manager errors."""

    category: str = CATEGORY_OPERATOR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "VM operation failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def kind(self) -> str:
        """Short name of the error kind (the class name)."""
        return type(self).__name__

    def to_dict(self) -> dict:
        """Serialize for API responses and runtime error records."""
        return {"detail": self.detail, "error": self.kind, "category": self.category}


class VMValidationError(VMHostError):
    """Input is invalid; nothing was changed."""

    category = CATEGORY_INPUT
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Validation error"


class VMNotFound(VMHostError):
    """No VM with the given name exists."""

    category = CATEGORY_INPUT
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "VM not found"


class DuplicateName(VMHostError):
    """A VM with the given name already exists."""

    category = CATEGORY_INPUT
    status_code = status.HTTP_409_CONFLICT
    default_detail = "VM already exists"


class InvalidState(VMHostError):
    """Operation is not permitted in the VM's current runtime state."""

    category = CATEGORY_INPUT
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Operation not permitted in current state"


class InvalidResize(VMHostError):
    """Requested size is not larger than the current size."""

    category = CATEGORY_INPUT
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Volumes can only grow"


class StorageError(VMHostError):
    """Image creation, resize or removal failed."""

    category = CATEGORY_OPERATOR
    status_code = status.HTTP_507_INSUFFICIENT_STORAGE
    default_detail = "Storage operation failed"


class PortExhausted(VMHostError):
    """Every console port in the configured range is in use."""

    category = CATEGORY_RETRY
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "No free console port"


class MeshAddressError(VMHostError):
    """The mesh address allocator failed or rejected the request."""

    category = CATEGORY_RETRY
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Mesh address allocation failed"


class MeshAddressUnavailable(MeshAddressError):
    """The requested mesh address is already held by another owner."""

    default_detail = "Mesh address already in use"


class ProcessSpawnError(VMHostError):
    """The hypervisor process could not be launched."""

    category = CATEGORY_OPERATOR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Hypervisor process failed to start"


class ReadinessTimeout(VMHostError):
    """The hypervisor process did not become ready within the readiness window."""

    category = CATEGORY_OPERATOR
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "VM did not become ready in time"


class ShutdownTimeout(VMHostError):
    """Graceful shutdown did not complete and was escalated."""

    category = CATEGORY_OPERATOR
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "VM did not shut down in time"
