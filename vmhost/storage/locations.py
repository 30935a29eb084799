"""Storage locations: named directories that hold VM images."""

import shutil
from pathlib import Path
from typing import Dict, List

from vmhost.core.exceptions import VMValidationError
from vmhost.schemas.vm import StorageLocation
from vmhost.utils.logger import get_logger

logger = get_logger(__name__)


class StorageLocations:
    """Lookup of configured storage locations by name."""

    def __init__(self, locations: Dict[str, Path], default: str):
        if default not in locations:
            raise ValueError(f"Default storage location '{default}' is not configured")
        self._locations = {name: Path(path) for name, path in locations.items()}
        self.default = default

    def get(self, name: str | None = None) -> StorageLocation:
        """Resolve a location name (None means the default location)."""
        name = name or self.default
        path = self._locations.get(name)
        if path is None:
            raise VMValidationError(f"Unknown storage location: '{name}'")
        return StorageLocation(name=name, path=str(path))

    def resolve(self, location: StorageLocation, path: str | Path) -> Path:
        """Resolve a possibly relative image path against a location."""
        path = Path(path)
        if path.is_absolute():
            return path
        return Path(location.path) / path

    def ensure(self) -> None:
        """Create missing location directories."""
        for name, path in self._locations.items():
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(
                    "Cannot create storage location",
                    extra={"location": name, "path": str(path), "error": str(e)},
                )

    def list(self) -> List[StorageLocation]:
        """All locations with capacity figures where the directory is readable."""
        result = []
        for name, path in sorted(self._locations.items()):
            total = free = None
            try:
                usage = shutil.disk_usage(path)
                total, free = usage.total, usage.free
            except OSError:
                pass
            result.append(
                StorageLocation(name=name, path=str(path), total_bytes=total, free_bytes=free)
            )
        return result
