"""Tests for HttpMeshAllocator."""

import json

import httpx
import pytest

from vmhost.clients.mesh import HttpMeshAllocator
from vmhost.core.exceptions import MeshAddressError, MeshAddressUnavailable


def make_client(handler) -> HttpMeshAllocator:
    """Create a client whose requests are answered by ``handler``."""
    return HttpMeshAllocator(
        base_url="http://testmesh:8090", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_reserve_success():
    """Test successful mesh address reservation."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"address": "10.10.10.5", "owner_id": "web01"})

    client = make_client(handler)
    address = await client.reserve("web01")
    await client.close()

    assert address == "10.10.10.5"
    assert requests[0].method == "POST"
    assert requests[0].url.path == "/api/v1/mesh/reserve"
    assert json.loads(requests[0].content) == {"owner_id": "web01", "address": None}


@pytest.mark.asyncio
async def test_reserve_explicit_address_in_use():
    """A 409 means another owner holds the address."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, text="address held by db01")

    client = make_client(handler)

    with pytest.raises(MeshAddressUnavailable, match="10.10.10.9 is already in use"):
        await client.reserve("web01", "10.10.10.9")


@pytest.mark.asyncio
async def test_reserve_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="pool exhausted")

    client = make_client(handler)

    with pytest.raises(MeshAddressError, match="Failed to reserve mesh address: pool exhausted"):
        await client.reserve("web01")


@pytest.mark.asyncio
async def test_reserve_empty_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    with pytest.raises(MeshAddressError, match="returned no address"):
        await make_client(handler).reserve("web01")


@pytest.mark.asyncio
async def test_reserve_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(MeshAddressError, match="request failed"):
        await make_client(handler).reserve("web01")


@pytest.mark.asyncio
async def test_release():
    """Test release of a reserved and an unknown address."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        if request.url.path == "/api/v1/mesh/10.10.10.5":
            return httpx.Response(200, json={"released": True})
        return httpx.Response(404, text="not reserved")

    client = make_client(handler)

    assert await client.release("10.10.10.5") is True
    assert await client.release("10.10.10.6") is False


@pytest.mark.asyncio
async def test_release_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(MeshAddressError, match="Failed to release"):
        await make_client(handler).release("10.10.10.5")


@pytest.mark.asyncio
async def test_list_used():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/mesh/used"
        return httpx.Response(200, json={"addresses": ["10.10.10.5", "10.10.10.7"]})

    assert await make_client(handler).list_used() == {"10.10.10.5", "10.10.10.7"}
