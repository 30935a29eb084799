"""Global application dependencies: wiring of the registry and its components."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine

from vmhost.clients.mesh import HttpMeshAllocator
from vmhost.config import Settings, settings
from vmhost.database import build_engine, create_db_and_tables
from vmhost.hypervisor.launch import LaunchBuilder
from vmhost.hypervisor.supervisor import ProcessSupervisor
from vmhost.network.mesh import MeshAllocator
from vmhost.network.ports import PortAllocator
from vmhost.network.resolver import NetworkResolver
from vmhost.network.tap import TapManager
from vmhost.services.mesh_pool_service import LocalMeshAllocator
from vmhost.services.registry import VMRegistry
from vmhost.services.store import VMStore
from vmhost.storage.backend import create_backend
from vmhost.storage.locations import StorageLocations
from vmhost.storage.volumes import VolumeManager
from vmhost.utils.logger import get_logger
from vmhost.utils.telemetry import instrument_sqlalchemy

logger = get_logger(__name__)


def kvm_available(device: str) -> bool:
    """Whether hardware virtualization can be used."""
    return os.access(device, os.R_OK | os.W_OK)


async def build_mesh_allocator(config: Settings, engine: AsyncEngine) -> MeshAllocator:
    """Remote allocator when a URL is configured, otherwise the local pool."""
    if config.MESH_ALLOCATOR_URL:
        return HttpMeshAllocator(config.MESH_ALLOCATOR_URL)

    allocator = LocalMeshAllocator(
        engine,
        pool_name=config.MESH_POOL_NAME,
        cidr=config.MESH_NETWORK_CIDR,
        gateway=config.MESH_GATEWAY,
    )
    await allocator.ensure_pool()
    return allocator


async def build_registry(config: Settings = settings) -> VMRegistry:
    """Assemble a registry from configuration. Call :meth:`VMRegistry.open` before use."""
    config.VM_BASE_DIR.mkdir(parents=True, exist_ok=True)

    engine = build_engine(config.database_url, config.DATABASE_ECHO)
    await create_db_and_tables(engine)
    instrument_sqlalchemy(engine.sync_engine)

    locations = StorageLocations(config.storage_locations, config.DEFAULT_STORAGE_LOCATION)
    volumes = VolumeManager(
        create_backend(config.STORAGE_BACKEND, config.QEMU_IMG_BINARY),
        locations,
        min_free_bytes=config.STORAGE_MIN_FREE_MB * 1024 * 1024,
        strict_capacity=config.STORAGE_STRICT_CAPACITY,
    )

    network = NetworkResolver(
        allocator=await build_mesh_allocator(config, engine),
        tap_manager=TapManager(config.MESH_INTERFACE) if config.MESH_USE_TAP else None,
    )

    kvm = kvm_available(config.KVM_DEVICE)
    if not kvm:
        logger.warning(
            "KVM not available, guests will run under software emulation",
            extra={"kvm_device": config.KVM_DEVICE},
        )

    launcher = LaunchBuilder(
        binary=config.HYPERVISOR_BINARY,
        kvm=kvm,
        listen_host=config.CONSOLE_LISTEN_HOST,
        display_base=config.CONSOLE_DISPLAY_BASE,
        run_dir=config.VM_BASE_DIR,
    )

    return VMRegistry(
        store=VMStore(engine),
        volumes=volumes,
        locations=locations,
        ports=PortAllocator(
            config.CONSOLE_PORT_START,
            config.CONSOLE_PORT_END,
            probe_host=config.CONSOLE_PROBE_HOST,
        ),
        network=network,
        supervisor=ProcessSupervisor(settle_time=config.SPAWN_SETTLE_TIME),
        launcher=launcher,
        log_dir=config.VM_BASE_DIR,
        readiness_timeout=config.READINESS_TIMEOUT,
        shutdown_grace_period=config.SHUTDOWN_GRACE_PERIOD,
        kill_timeout=config.KILL_TIMEOUT,
        poll_interval=config.LIVENESS_POLL_INTERVAL,
        monitor_interval=config.MONITOR_INTERVAL,
        display_base=config.CONSOLE_DISPLAY_BASE,
        websocket_base=config.WEBSOCKET_PORT_BASE,
    )
