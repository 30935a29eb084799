"""Tests for storage locations, image backends and the volume manager."""

import os
from pathlib import Path

import pytest

from vmhost.core.exceptions import InvalidResize, StorageError, VMValidationError
from vmhost.models.vm import ImageFormat
from vmhost.storage.backend import (
    QemuImgBackend,
    SparseFileBackend,
    create_backend,
)
from vmhost.storage.locations import StorageLocations
from vmhost.storage.volumes import VolumeManager

MIB = 1024 * 1024


class TestStorageLocations:
    def test_default_location(self, locations: StorageLocations, tmp_path: Path):
        location = locations.get()
        assert location.name == "local"
        assert location.path == str(tmp_path / "images")

    def test_unknown_location(self, locations: StorageLocations):
        with pytest.raises(VMValidationError, match="Unknown storage location"):
            locations.get("nowhere")

    def test_default_must_be_configured(self, tmp_path: Path):
        with pytest.raises(ValueError):
            StorageLocations({"a": tmp_path}, default="b")

    def test_list_reports_capacity(self, locations: StorageLocations):
        listed = locations.list()

        assert [loc.name for loc in listed] == ["fast", "local"]
        assert all(loc.total_bytes and loc.free_bytes is not None for loc in listed)

    def test_resolve(self, locations: StorageLocations, tmp_path: Path):
        location = locations.get()
        assert locations.resolve(location, "a.qcow2") == tmp_path / "images" / "a.qcow2"
        assert locations.resolve(location, "/abs/b.img") == Path("/abs/b.img")


class TestBackends:
    def test_create_backend(self):
        assert isinstance(create_backend("sparse"), SparseFileBackend)
        assert isinstance(create_backend("qemu-img", "/usr/bin/qemu-img"), QemuImgBackend)
        with pytest.raises(ValueError):
            create_backend("zfs")

    @pytest.mark.asyncio
    async def test_sparse_backend_lifecycle(self, tmp_path: Path):
        backend = SparseFileBackend()
        path = tmp_path / "disk.img"

        await backend.create_image(path, 4 * MIB, ImageFormat.RAW)
        assert await backend.image_size(path) == 4 * MIB

        await backend.resize_image(path, 8 * MIB, ImageFormat.RAW)
        assert path.stat().st_size == 8 * MIB

        await backend.remove_image(path)
        assert not path.exists()
        # Already absent counts as removed
        await backend.remove_image(path)

    @pytest.mark.asyncio
    async def test_sparse_backend_refuses_existing_file(self, tmp_path: Path):
        path = tmp_path / "disk.img"
        path.write_bytes(b"data")

        with pytest.raises(StorageError, match="already exists"):
            await SparseFileBackend().create_image(path, MIB, ImageFormat.RAW)
        assert path.read_bytes() == b"data"

    @pytest.mark.asyncio
    async def test_sparse_backend_only_makes_raw_images(self, tmp_path: Path):
        backend = SparseFileBackend()
        path = tmp_path / "disk.qcow2"

        with pytest.raises(StorageError, match="cannot create qcow2 images"):
            await backend.create_image(path, MIB, ImageFormat.QCOW2)
        assert not path.exists()

        raw = tmp_path / "disk.img"
        await backend.create_image(raw, MIB, ImageFormat.RAW)
        with pytest.raises(StorageError, match="cannot create qcow2 images"):
            await backend.resize_image(raw, 2 * MIB, ImageFormat.QCOW2)
        assert raw.stat().st_size == MIB

    @pytest.mark.asyncio
    async def test_qemu_img_missing_binary(self, tmp_path: Path):
        backend = QemuImgBackend("qemu-img-does-not-exist")

        with pytest.raises(StorageError, match="not found"):
            await backend.create_image(tmp_path / "disk.qcow2", MIB, ImageFormat.QCOW2)


class TestVolumeManager:
    @pytest.mark.asyncio
    async def test_create_volume_exact_size(self, volume_manager: VolumeManager, locations):
        path = await volume_manager.create_volume(
            locations.get(), "web01.qcow2", 20 * 1024**3, ImageFormat.QCOW2
        )

        assert path.is_absolute()
        assert path.stat().st_size == 20 * 1024**3
        assert await volume_manager.volume_size(path) == 20 * 1024**3

    @pytest.mark.asyncio
    async def test_create_volume_existing_path(self, volume_manager: VolumeManager, locations):
        location = locations.get()
        await volume_manager.create_volume(location, "a.img", MIB, ImageFormat.RAW)

        with pytest.raises(StorageError, match="already exists"):
            await volume_manager.create_volume(location, "a.img", 2 * MIB, ImageFormat.RAW)

    @pytest.mark.asyncio
    async def test_create_volume_missing_location(self, volume_manager: VolumeManager, tmp_path):
        locations = StorageLocations({"gone": tmp_path / "missing"}, default="gone")

        with pytest.raises(StorageError, match="does not exist"):
            await volume_manager.create_volume(locations.get(), "a.img", MIB, ImageFormat.RAW)

    @pytest.mark.asyncio
    async def test_create_volume_unwritable_location(self, volume_manager: VolumeManager, locations):
        if os.geteuid() == 0:
            pytest.skip("root can write to read-only directories")
        location = locations.get("fast")
        os.chmod(location.path, 0o500)
        try:
            with pytest.raises(StorageError, match="not writable"):
                await volume_manager.create_volume(location, "a.img", MIB, ImageFormat.RAW)
        finally:
            os.chmod(location.path, 0o700)

    @pytest.mark.asyncio
    async def test_strict_capacity(self, locations):
        manager = VolumeManager(SparseFileBackend(), locations, strict_capacity=True)

        with pytest.raises(StorageError, match="Insufficient space"):
            await manager.create_volume(locations.get(), "huge.img", 2**62, ImageFormat.RAW)
        assert not (Path(locations.get().path) / "huge.img").exists()

    @pytest.mark.asyncio
    async def test_min_free_floor(self, locations):
        manager = VolumeManager(SparseFileBackend(), locations, min_free_bytes=2**62)

        with pytest.raises(StorageError, match="Insufficient space"):
            await manager.create_volume(locations.get(), "a.img", MIB, ImageFormat.RAW)

    @pytest.mark.asyncio
    async def test_format_unsupported_by_backend(self, locations):
        manager = VolumeManager(SparseFileBackend(), locations, min_free_bytes=0)

        with pytest.raises(StorageError, match="supported: raw"):
            await manager.create_volume(locations.get(), "web01.qcow2", MIB, ImageFormat.QCOW2)
        assert list(Path(locations.get().path).iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_size(self, volume_manager: VolumeManager, locations):
        with pytest.raises(StorageError, match="Invalid image size"):
            await volume_manager.create_volume(locations.get(), "a.img", 0, ImageFormat.RAW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("new_size", [MIB, 4 * MIB, 8 * MIB])
    async def test_grow_rejects_not_larger(
        self, volume_manager: VolumeManager, locations, new_size: int
    ):
        path = await volume_manager.create_volume(
            locations.get(), "a.img", 8 * MIB, ImageFormat.RAW
        )

        with pytest.raises(InvalidResize):
            await volume_manager.grow_volume(path, new_size, ImageFormat.RAW)

        assert path.stat().st_size == 8 * MIB

    @pytest.mark.asyncio
    async def test_grow_volume(self, volume_manager: VolumeManager, locations):
        path = await volume_manager.create_volume(
            locations.get(), "a.img", 8 * MIB, ImageFormat.RAW
        )

        assert await volume_manager.grow_volume(path, 16 * MIB, ImageFormat.RAW) == 16 * MIB
        assert path.stat().st_size == 16 * MIB

    @pytest.mark.asyncio
    async def test_delete_volume_surfaces_failure(self, volume_manager: VolumeManager, tmp_path):
        directory = tmp_path / "not-a-file"
        directory.mkdir()

        with pytest.raises(StorageError, match="Failed to remove"):
            await volume_manager.delete_volume(directory)
