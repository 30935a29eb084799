"""Business logic services."""

# Imports are not done here to avoid circular import issues.
# Import services directly from their modules:
#   from vmhost.services.registry import VMRegistry
#   from vmhost.services.mesh_pool_service import LocalMeshAllocator
