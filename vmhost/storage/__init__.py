"""Block-image storage: backends, storage locations and the volume manager."""
