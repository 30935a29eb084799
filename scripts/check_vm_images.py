"""Compare VMs in the vmhost database with the image files in storage locations.

Reports disks whose image is missing and image files that no VM references.
Pass --delete to remove the unreferenced files.
"""

import asyncio
import sys
from pathlib import Path

from vmhost.config import settings
from vmhost.database import build_engine, create_db_and_tables
from vmhost.services.store import VMStore
from vmhost.storage.backend import create_backend
from vmhost.storage.locations import StorageLocations
from vmhost.storage.volumes import VolumeManager
from vmhost.core.exceptions import StorageError

IMAGE_SUFFIXES = {".qcow2", ".img"}


async def main():
    """Check VM images."""
    delete = "--delete" in sys.argv[1:]

    engine = build_engine(settings.database_url)
    await create_db_and_tables(engine)
    specs = await VMStore(engine).load_all()
    await engine.dispose()

    locations = StorageLocations(settings.storage_locations, settings.DEFAULT_STORAGE_LOCATION)
    volumes = VolumeManager(
        create_backend(settings.STORAGE_BACKEND, settings.QEMU_IMG_BINARY), locations
    )

    print("=" * 70)
    print("VM IMAGE CHECK")
    print("=" * 70)

    referenced = set()
    missing = []
    print(f"\n📊 VMs in database: {len(specs)}")
    if specs:
        print(f"\n{'Name':<24} {'Disk':<10} {'Size':>12}  Path")
        print("-" * 70)
    for spec in specs:
        for disk in spec.disks():
            path = Path(disk.path)
            referenced.add(path.resolve())
            disk_id = getattr(disk, "id", "os")
            if not path.exists():
                missing.append((spec.name, disk_id, path))
            print(f"{spec.name:<24} {disk_id:<10} {disk.size_bytes:>12}  {path}")

    orphans = []
    for location in locations.list():
        root = Path(location.path)
        if not root.is_dir():
            continue
        for path in sorted(root.iterdir()):
            if path.suffix in IMAGE_SUFFIXES and path.resolve() not in referenced:
                orphans.append(path)

    if missing:
        print(f"\n⚠️  Disks with missing images: {len(missing)}")
        for name, disk_id, path in missing:
            print(f"   {name}/{disk_id}: {path}")
    else:
        print("\n✅ Every disk has its image")

    if not orphans:
        print("✅ No unreferenced images")
        return

    print(f"\n⚠️  Unreferenced images: {len(orphans)}")
    for path in orphans:
        print(f"   {path}")

    if not delete:
        print("\nRun with --delete to remove them")
        return

    deleted = 0
    for path in orphans:
        try:
            await volumes.delete_volume(path)
            deleted += 1
        except StorageError as e:
            print(f"   ✗ {e.detail}")

    print(f"\n🗑️  Deleted {deleted}/{len(orphans)} images")


if __name__ == "__main__":
    asyncio.run(main())
