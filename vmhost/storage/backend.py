"""Image backends: the host-level operations that create, grow and remove disk images."""

import asyncio
import json
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import FrozenSet, List

from vmhost.core.exceptions import StorageError
from vmhost.models.vm import ImageFormat
from vmhost.utils.logger import get_logger

logger = get_logger(__name__)


class ImageBackend(ABC):
    """Synchronous-looking, crash-resistant image operations."""

    formats: FrozenSet[ImageFormat] = frozenset(ImageFormat)

    def check_format(self, fmt: ImageFormat) -> None:
        """Raise StorageError if this backend cannot produce ``fmt`` images."""
        if fmt not in self.formats:
            supported = ", ".join(sorted(f.value for f in self.formats))
            raise StorageError(
                f"{type(self).__name__} cannot create {fmt.value} images (supported: {supported})"
            )

    @abstractmethod
    async def create_image(self, path: Path, size_bytes: int, fmt: ImageFormat) -> None:
        """Create a new image of exactly ``size_bytes`` virtual size."""

    @abstractmethod
    async def resize_image(self, path: Path, new_size_bytes: int, fmt: ImageFormat) -> None:
        """Change the virtual size of an existing image."""

    @abstractmethod
    async def image_size(self, path: Path) -> int:
        """Virtual size of an image in bytes."""

    async def remove_image(self, path: Path) -> None:
        """Remove an image file; a missing file counts as removed."""
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("Image already absent", extra={"path": str(path)})
        except OSError as e:
            raise StorageError(f"Failed to remove image {path}: {e}") from e


class QemuImgBackend(ImageBackend):
    """Images managed through the ``qemu-img`` tool."""

    def __init__(self, binary: str = "qemu-img"):
        self.binary = binary

    async def _run(self, args: List[str]) -> str:
        if shutil.which(self.binary) is None:
            raise StorageError(
                f"{self.binary} not found. Install QEMU utilities (e.g. qemu-utils)"
            )

        process = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
            logger.error(
                "qemu-img failed",
                extra={"args": args, "return_code": process.returncode, "error": message},
            )
            raise StorageError(f"qemu-img {args[0]} failed: {message}")

        return stdout.decode(errors="replace")

    async def create_image(self, path: Path, size_bytes: int, fmt: ImageFormat) -> None:
        await self._run(["create", "-f", fmt.value, str(path), str(size_bytes)])

    async def resize_image(self, path: Path, new_size_bytes: int, fmt: ImageFormat) -> None:
        await self._run(["resize", "-f", fmt.value, str(path), str(new_size_bytes)])

    async def image_size(self, path: Path) -> int:
        output = await self._run(["info", "--output=json", str(path)])
        try:
            return int(json.loads(output)["virtual-size"])
        except (ValueError, KeyError) as e:
            raise StorageError(f"Unreadable qemu-img info for {path}: {e}") from e


class SparseFileBackend(ImageBackend):
    """Plain sparse files whose length is the virtual size.

    Only raw images can be produced this way; meant for hosts without
    qemu-img.
    """

    formats = frozenset({ImageFormat.RAW})

    async def create_image(self, path: Path, size_bytes: int, fmt: ImageFormat) -> None:
        self.check_format(fmt)
        try:
            with open(path, "xb") as f:
                f.truncate(size_bytes)
        except FileExistsError as e:
            raise StorageError(f"Image already exists: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to create image {path}: {e}") from e

    async def resize_image(self, path: Path, new_size_bytes: int, fmt: ImageFormat) -> None:
        self.check_format(fmt)
        try:
            os.truncate(path, new_size_bytes)
        except OSError as e:
            raise StorageError(f"Failed to resize image {path}: {e}") from e

    async def image_size(self, path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError as e:
            raise StorageError(f"Failed to stat image {path}: {e}") from e


def create_backend(name: str, qemu_img_binary: str = "qemu-img") -> ImageBackend:
    """Build the backend selected by configuration."""
    if name == "qemu-img":
        return QemuImgBackend(qemu_img_binary)
    if name == "sparse":
        return SparseFileBackend()
    raise ValueError(f"Unknown storage backend: {name}")
