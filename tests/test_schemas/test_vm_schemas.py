"""Tests for VM request schemas."""

import pytest
from pydantic import ValidationError

from vmhost.models.vm import DiskBus, ImageFormat, NicModel
from vmhost.schemas.vm import (
    GIB,
    VMActionRequest,
    VMCreate,
    VMUpdate,
    VolumeCreate,
    VolumeResize,
    validate_mesh_request,
)


class TestVMCreate:
    """Tests for VMCreate schema."""

    def test_defaults(self):
        vm = VMCreate(name="web01")

        assert vm.cpu_count == 1
        assert vm.memory_mb == 1024
        assert vm.disk_size_bytes == 10 * GIB
        assert vm.disk_format is ImageFormat.QCOW2
        assert vm.os_disk_bus is DiskBus.VIRTIO
        assert vm.nic_model is NicModel.VIRTIO
        assert vm.mesh_address is None
        assert vm.auto_start is False

    @pytest.mark.parametrize("name", ["a", "web01", "win_build-2", "A9"])
    def test_valid_names(self, name):
        assert VMCreate(name=name).name == name

    @pytest.mark.parametrize("name", ["-web", "web_", "web 01", "web.01", "x" * 65])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            VMCreate(name=name)

    @pytest.mark.parametrize(
        "field, value",
        [("cpu_count", 0), ("cpu_count", 65), ("memory_mb", 64), ("disk_size_gb", 0)],
    )
    def test_resource_bounds(self, field, value):
        with pytest.raises(ValidationError):
            VMCreate(name="web01", **{field: value})

    def test_blank_media_is_none(self):
        vm = VMCreate(name="web01", install_media="  ", drivers_media="")

        assert vm.install_media is None
        assert vm.drivers_media is None

    def test_mesh_address(self):
        assert VMCreate(name="web01", mesh_address="auto").mesh_address == "auto"
        assert VMCreate(name="web01", mesh_address=" 10.10.10.5 ").mesh_address == "10.10.10.5"
        assert VMCreate(name="web01", mesh_address="").mesh_address is None

        with pytest.raises(ValidationError, match="Invalid mesh address"):
            VMCreate(name="web01", mesh_address="10.10.10.300")

    def test_duplicate_volume_ids(self):
        with pytest.raises(ValidationError, match="unique"):
            VMCreate(
                name="web01",
                extra_volumes=[{"id": "data", "size_gb": 1}, {"id": "data", "size_gb": 2}],
            )


class TestVMUpdate:
    """Tests for VMUpdate schema."""

    def test_all_optional(self):
        update = VMUpdate()
        assert update.model_dump(exclude_unset=True) == {}

    def test_empty_mesh_address_clears(self):
        assert VMUpdate(mesh_address="").mesh_address == ""
        assert VMUpdate(mesh_address="auto").mesh_address == "auto"

    def test_resource_bounds(self):
        with pytest.raises(ValidationError):
            VMUpdate(memory_mb=10)


class TestVolumeSchemas:
    """Tests for volume request schemas."""

    def test_volume_create(self):
        volume = VolumeCreate(id="data", size_gb=5, format="raw", bus="sata")

        assert volume.size_bytes == 5 * GIB
        assert volume.format is ImageFormat.RAW
        assert volume.bus is DiskBus.SATA
        assert volume.storage_location is None

    def test_os_id_is_reserved(self):
        with pytest.raises(ValidationError, match="reserved"):
            VolumeCreate(id="os", size_gb=1)

    def test_volume_resize(self):
        assert VolumeResize(size_gb=3).size_bytes == 3 * GIB
        with pytest.raises(ValidationError):
            VolumeResize(size_gb=0)


@pytest.mark.parametrize("action", ["start", "stop"])
def test_action_request(action):
    assert VMActionRequest(action=action).action == action


def test_action_request_rejects_unknown():
    with pytest.raises(ValidationError):
        VMActionRequest(action="reboot")


def test_validate_mesh_request():
    assert validate_mesh_request(None) is None
    assert validate_mesh_request("", allow_clear=True) == ""
    with pytest.raises(ValueError):
        validate_mesh_request("mesh-1")
