"""Pytest configuration and fixtures."""

import asyncio
import itertools
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncEngine

from vmhost.core.exceptions import ProcessSpawnError
from vmhost.database import build_engine, create_db_and_tables
from vmhost.hypervisor.launch import LaunchBuilder, LaunchConfig
from vmhost.hypervisor.supervisor import ProcessHandle, ProcessSupervisor
from vmhost.network.ports import PortAllocator
from vmhost.network.resolver import NetworkResolver
from vmhost.services.mesh_pool_service import LocalMeshAllocator
from vmhost.services.registry import VMRegistry
from vmhost.services.store import VMStore
from vmhost.models.vm import ImageFormat
from vmhost.storage.backend import SparseFileBackend
from vmhost.storage.locations import StorageLocations
from vmhost.storage.volumes import VolumeManager

TEST_PORT_START = 5910
TEST_PORT_END = 5912

_pids = itertools.count(40000)


class FakeProcess:
    """Stands in for an ``asyncio.subprocess.Process`` running a hypervisor."""

    def __init__(self, ignore_terminate: bool = False, ignore_kill: bool = False):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.ignore_terminate = ignore_terminate
        self.ignore_kill = ignore_kill
        self.signals: List[str] = []
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        if not self.ignore_kill:
            self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSupervisor(ProcessSupervisor):
    """Process supervisor whose processes are scripted instead of executed.

    Termination and exit waiting use the real :class:`ProcessSupervisor`
    logic against :class:`FakeProcess` objects.
    """

    def __init__(self):
        super().__init__(settle_time=0)
        self.configs: List[LaunchConfig] = []
        self.handles: List[ProcessHandle] = []
        self.spawn_error: Optional[str] = None
        self.ready = True
        self.ignore_terminate = False
        self.ignore_kill = False
        self.survivors: Dict[str, FakeProcess] = {}

    async def spawn(self, config: LaunchConfig) -> ProcessHandle:
        self.configs.append(config)
        if self.spawn_error:
            raise ProcessSpawnError(self.spawn_error)
        process = FakeProcess(self.ignore_terminate, self.ignore_kill)
        handle = ProcessHandle(pid=process.pid, process=process, config=config)
        self.handles.append(handle)
        return handle

    async def is_ready(self, handle: ProcessHandle) -> bool:
        return self.is_alive(handle) and self.ready

    def find_running(
        self,
        name: str,
        qmp_socket: Optional[Path] = None,
        log_path: Optional[Path] = None,
    ) -> Optional[ProcessHandle]:
        process = self.survivors.get(name)
        if process is None:
            return None
        config = LaunchConfig(
            name=name, argv=[], boot_order=[], console_port=0, log_path=log_path
        )
        return ProcessHandle(pid=process.pid, process=process, config=config)


class FakeImageBackend(SparseFileBackend):
    """Sparse files standing in for images of every format."""

    formats = frozenset(ImageFormat)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite database in a temporary directory."""
    engine = build_engine(f"sqlite:///{tmp_path / 'vmhost-test.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def locations(tmp_path: Path) -> StorageLocations:
    locations = StorageLocations(
        {"local": tmp_path / "images", "fast": tmp_path / "fast"},
        default="local",
    )
    locations.ensure()
    return locations


@pytest.fixture
def volume_manager(locations: StorageLocations) -> VolumeManager:
    return VolumeManager(FakeImageBackend(), locations, min_free_bytes=0)


@pytest_asyncio.fixture
async def mesh_allocator(engine: AsyncEngine) -> LocalMeshAllocator:
    allocator = LocalMeshAllocator(
        engine, pool_name="mesh", cidr="10.10.10.0/24", gateway="10.10.10.1"
    )
    await allocator.ensure_pool()
    return allocator


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def ports() -> PortAllocator:
    return PortAllocator(TEST_PORT_START, TEST_PORT_END)


@pytest_asyncio.fixture
async def registry(
    tmp_path: Path,
    engine: AsyncEngine,
    locations: StorageLocations,
    volume_manager: VolumeManager,
    mesh_allocator: LocalMeshAllocator,
    supervisor: FakeSupervisor,
    ports: PortAllocator,
) -> AsyncGenerator[VMRegistry, None]:
    """Opened registry with short lifecycle timings."""
    registry = VMRegistry(
        store=VMStore(engine),
        volumes=volume_manager,
        locations=locations,
        ports=ports,
        network=NetworkResolver(allocator=mesh_allocator),
        supervisor=supervisor,
        launcher=LaunchBuilder(kvm=False),
        log_dir=tmp_path / "run",
        readiness_timeout=0.3,
        shutdown_grace_period=0.2,
        kill_timeout=0.2,
        poll_interval=0.01,
        monitor_interval=0.05,
    )
    await registry.open(auto_start=False)
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def client(registry: VMRegistry) -> AsyncGenerator[AsyncClient, None]:
    """API client bound to the test registry."""
    from vmhost.main import create_app

    async def registry_factory() -> VMRegistry:
        return registry

    app = create_app(registry_factory=registry_factory)
    # ASGITransport does not run the lifespan; attach the opened registry directly
    app.state.registry = registry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client


@pytest.fixture(scope="session", autouse=True)
def shutdown_tracer_provider():
    """Shutdown OpenTelemetry TracerProvider after all tests complete.

    The BatchSpanProcessor's background thread must stop before pytest
    closes stdout/stderr.
    """
    yield

    try:
        tracer_provider = trace.get_tracer_provider()
        if hasattr(tracer_provider, "force_flush"):
            tracer_provider.force_flush(timeout_millis=5000)
        if hasattr(tracer_provider, "shutdown"):
            tracer_provider.shutdown()
    except Exception:
        pass
