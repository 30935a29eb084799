"""Storage Volume Manager: creates, grows and deletes the image files backing disks."""

import os
import shutil
from pathlib import Path

from vmhost.core.exceptions import InvalidResize, StorageError
from vmhost.models.vm import ImageFormat
from vmhost.schemas.vm import StorageLocation
from vmhost.storage.backend import ImageBackend
from vmhost.storage.locations import StorageLocations
from vmhost.utils.logger import get_logger, log_timer
from vmhost.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()


class VolumeManager:
    """Image lifecycle on top of an :class:`ImageBackend`.

    Sizes are grow-only: a resize to a size that is not strictly larger than
    the current one is rejected before the file is touched.
    """

    def __init__(
        self,
        backend: ImageBackend,
        locations: StorageLocations,
        min_free_bytes: int = 64 * 1024 * 1024,
        strict_capacity: bool = False,
    ):
        self.backend = backend
        self.locations = locations
        self.min_free_bytes = min_free_bytes
        self.strict_capacity = strict_capacity

    def _check_capacity(self, directory: Path, size_bytes: int) -> None:
        if not directory.is_dir():
            raise StorageError(f"Storage location does not exist: {directory}")
        if not os.access(directory, os.W_OK):
            raise StorageError(f"Storage location is not writable: {directory}")

        try:
            free = shutil.disk_usage(directory).free
        except OSError as e:
            raise StorageError(f"Cannot read capacity of {directory}: {e}") from e

        required = size_bytes if self.strict_capacity else self.min_free_bytes
        if free < required:
            raise StorageError(
                f"Insufficient space in {directory}: {free} bytes free, {required} required"
            )

    async def create_volume(
        self,
        location: StorageLocation,
        filename: str,
        size_bytes: int,
        fmt: ImageFormat,
    ) -> Path:
        """Allocate a new sparse image of exactly ``size_bytes``.

        Returns:
            Absolute path of the new image

        Raises:
            StorageError: If the location is missing, unwritable or full, the
                path is taken, or the backend fails or cannot produce ``fmt``
        """
        with tracer.start_as_current_span("storage.volume.create"):
            path = self.locations.resolve(location, filename)
            add_span_attributes(
                **{
                    "volume.path": str(path),
                    "volume.size_bytes": size_bytes,
                    "volume.format": fmt.value,
                }
            )

            if size_bytes <= 0:
                raise StorageError(f"Invalid image size: {size_bytes}")

            self.backend.check_format(fmt)

            self._check_capacity(path.parent, size_bytes)

            if path.exists():
                raise StorageError(f"Image already exists: {path}")

            logger.info(
                "Creating volume",
                extra={"path": str(path), "size_bytes": size_bytes, "format": fmt.value},
            )

            with log_timer("create_image", logger):
                await self.backend.create_image(path, size_bytes, fmt)

            return path

    async def grow_volume(self, path: Path, new_size_bytes: int, fmt: ImageFormat) -> int:
        """Grow an image to ``new_size_bytes``.

        Returns:
            The new size

        Raises:
            InvalidResize: If ``new_size_bytes`` is not larger than the current size
            StorageError: If the backend fails
        """
        with tracer.start_as_current_span("storage.volume.grow"):
            current = await self.backend.image_size(path)
            add_span_attributes(
                **{
                    "volume.path": str(path),
                    "volume.size_bytes": current,
                    "volume.new_size_bytes": new_size_bytes,
                }
            )

            if new_size_bytes <= current:
                raise InvalidResize(
                    f"New size {new_size_bytes} must be larger than current size {current}"
                )

            logger.info(
                "Growing volume",
                extra={"path": str(path), "size_bytes": current, "new_size_bytes": new_size_bytes},
            )

            with log_timer("resize_image", logger):
                await self.backend.resize_image(path, new_size_bytes, fmt)

            return new_size_bytes

    async def delete_volume(self, path: Path) -> None:
        """Remove an image. Failures propagate as StorageError."""
        with tracer.start_as_current_span("storage.volume.delete"):
            add_span_attributes(**{"volume.path": str(path)})
            logger.info("Deleting volume", extra={"path": str(path)})
            await self.backend.remove_image(path)

    async def volume_size(self, path: Path) -> int:
        """Current virtual size of an image."""
        return await self.backend.image_size(path)
