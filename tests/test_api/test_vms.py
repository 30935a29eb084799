"""Tests for VM endpoints."""

import pytest
from httpx import AsyncClient

from vmhost.services.registry import VMRegistry
from tests.conftest import TEST_PORT_START

API = "/api/v1/vms"
GIB = 1024**3


async def create_vm(client: AsyncClient, name: str = "web01", **kwargs) -> dict:
    payload = {"name": name, "cpu_count": 2, "memory_mb": 2048, "disk_size_gb": 1}
    payload.update(kwargs)
    response = await client.post(API, json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateVM:
    """Tests for VM creation endpoint."""

    @pytest.mark.asyncio
    async def test_create_vm(self, client: AsyncClient):
        data = await create_vm(client, disk_size_gb=20)

        assert data["spec"]["name"] == "web01"
        assert data["spec"]["os_disk"]["size_bytes"] == 20 * GIB
        assert data["spec"]["os_disk"]["format"] == "qcow2"
        assert data["spec"]["network"]["mac_address"].startswith("52:54:00:")
        assert data["runtime"]["status"] == "stopped"
        assert data["runtime"]["console_port"] is None

    @pytest.mark.asyncio
    async def test_create_duplicate(self, client: AsyncClient):
        await create_vm(client)

        response = await client.post(API, json={"name": "web01"})

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "DuplicateName"
        assert body["category"] == "input"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["-web", "web-", "web 01", "web.01", ""])
    async def test_create_invalid_name(self, client: AsyncClient, name: str):
        response = await client.post(API, json={"name": name})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_unknown_storage_location(self, client: AsyncClient):
        response = await client.post(API, json={"name": "web01", "storage_location": "nowhere"})

        assert response.status_code == 422
        assert response.json()["error"] == "VMValidationError"

        listed = await client.get(API)
        assert listed.json() == []

    @pytest.mark.asyncio
    async def test_create_with_mesh_address(self, client: AsyncClient):
        data = await create_vm(client, mesh_address="auto")
        assert data["spec"]["network"]["mesh_address"] == "10.10.10.2"

        response = await client.post(API, json={"name": "web02", "mesh_address": "10.10.10.2"})
        assert response.status_code == 503
        assert response.json()["error"] == "MeshAddressUnavailable"
        assert response.json()["category"] == "retry"


class TestReadVM:
    """Tests for VM read endpoints."""

    @pytest.mark.asyncio
    async def test_list_sorted(self, client: AsyncClient):
        await create_vm(client, "zeta")
        await create_vm(client, "alpha")

        response = await client.get(API)

        assert response.status_code == 200
        assert [vm["spec"]["name"] for vm in response.json()] == ["alpha", "zeta"]

    @pytest.mark.asyncio
    async def test_get_vm(self, client: AsyncClient):
        await create_vm(client)

        response = await client.get(f"{API}/web01")

        assert response.status_code == 200
        assert response.json()["spec"]["name"] == "web01"

    @pytest.mark.asyncio
    async def test_get_missing_vm(self, client: AsyncClient):
        response = await client.get(f"{API}/ghost")

        assert response.status_code == 404
        assert response.json()["error"] == "VMNotFound"

    @pytest.mark.asyncio
    async def test_logs_without_output(self, client: AsyncClient):
        await create_vm(client)

        response = await client.get(f"{API}/web01/logs", params={"lines": 10})

        assert response.status_code == 200
        assert response.json() == {"name": "web01", "logs": "No logs available for this VM."}


class TestLifecycle:
    """Tests for start/stop actions and the console endpoint."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, client: AsyncClient, registry: VMRegistry):
        await create_vm(client)

        response = await client.post(f"{API}/web01/action", json={"action": "start"})
        assert response.status_code == 202
        assert response.json()["status"] in ("starting", "running")
        await registry.wait_settled("web01", timeout=5)

        console = await client.get(f"{API}/web01/console")
        assert console.json() == {
            "name": "web01",
            "console_port": TEST_PORT_START,
            "websocket_port": 6080 + TEST_PORT_START - 5900,
        }

        response = await client.post(f"{API}/web01/action", json={"action": "start"})
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidState"

        response = await client.post(f"{API}/web01/action", json={"action": "stop"})
        assert response.status_code == 202
        await registry.wait_settled("web01", timeout=5)

        vm = (await client.get(f"{API}/web01")).json()
        assert vm["runtime"]["status"] == "stopped"
        assert vm["runtime"]["console_port"] is None

    @pytest.mark.asyncio
    async def test_invalid_action(self, client: AsyncClient):
        await create_vm(client)

        response = await client.post(f"{API}/web01/action", json={"action": "reboot"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_and_delete_require_stopped(
        self, client: AsyncClient, registry: VMRegistry
    ):
        await create_vm(client)
        await client.post(f"{API}/web01/action", json={"action": "start"})
        await registry.wait_settled("web01", timeout=5)

        response = await client.put(f"{API}/web01", json={"cpu_count": 4})
        assert response.status_code == 409

        response = await client.delete(f"{API}/web01")
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidState"

        await registry.stop("web01")
        await registry.wait_settled("web01", timeout=5)


class TestUpdateAndDelete:
    """Tests for update, volume and delete endpoints."""

    @pytest.mark.asyncio
    async def test_update(self, client: AsyncClient):
        await create_vm(client)

        response = await client.put(
            f"{API}/web01", json={"cpu_count": 4, "nic_model": "e1000", "disk_size_gb": 2}
        )

        assert response.status_code == 200
        spec = response.json()["spec"]
        assert spec["cpu_count"] == 4
        assert spec["memory_mb"] == 2048
        assert spec["network"]["model"] == "e1000"
        assert spec["os_disk"]["size_bytes"] == 2 * GIB

    @pytest.mark.asyncio
    async def test_volumes(self, client: AsyncClient):
        await create_vm(client)

        response = await client.post(
            f"{API}/web01/volumes", json={"id": "data", "size_gb": 2, "format": "raw"}
        )
        assert response.status_code == 201
        assert [v["id"] for v in response.json()["spec"]["extra_volumes"]] == ["data"]

        response = await client.post(f"{API}/web01/volumes/data/resize", json={"size_gb": 1})
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidResize"

        response = await client.post(f"{API}/web01/volumes/data/resize", json={"size_gb": 3})
        assert response.status_code == 200
        assert response.json()["spec"]["extra_volumes"][0]["size_bytes"] == 3 * GIB

        response = await client.delete(f"{API}/web01/volumes/data")
        assert response.status_code == 200
        assert response.json()["spec"]["extra_volumes"] == []

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient):
        await create_vm(client)

        response = await client.delete(f"{API}/web01")
        assert response.status_code == 200
        assert response.json() == {"message": "VM 'web01' deleted"}

        response = await client.get(f"{API}/web01")
        assert response.status_code == 404

        response = await client.delete(f"{API}/web01")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_storage(client: AsyncClient):
    response = await client.get("/api/v1/storage")

    assert response.status_code == 200
    assert [loc["name"] for loc in response.json()] == ["fast", "local"]
