"""VM Registry: the authoritative record of every VM and its lifecycle state machine.

States move ``stopped -> starting -> running -> stopping -> stopped``; ``error``
is entered from starting/stopping (or from running when the process dies)
and left only through an explicit stop. Mutations on one VM are serialized
by a per-name lock; different VMs proceed concurrently. Start and stop
return as soon as the transition is recorded; readiness and shutdown are
awaited by background tasks that report back into the registry.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set

from vmhost.core.exceptions import (
    DuplicateName,
    InvalidResize,
    InvalidState,
    ProcessSpawnError,
    ReadinessTimeout,
    ShutdownTimeout,
    StorageError,
    VMHostError,
    VMNotFound,
    VMValidationError,
)
from vmhost.hypervisor.launch import LaunchBuilder
from vmhost.hypervisor.supervisor import (
    ProcessHandle,
    ProcessSupervisor,
    append_log,
    tail_file,
)
from vmhost.models.vm import ImageFormat, VMStatus
from vmhost.network.ports import PortAllocator
from vmhost.network.resolver import NetworkResolver, ResolvedNetwork, generate_mac
from vmhost.schemas.vm import (
    GIB,
    MAX_CPUS,
    MAX_MEMORY_MB,
    MESH_AUTO,
    MIN_CPUS,
    MIN_MEMORY_MB,
    NAME_PATTERN,
    OS_DISK_ID,
    ConsoleResponse,
    DiskSpec,
    NetworkSpec,
    RuntimeInfo,
    StorageLocation,
    VMCreate,
    VMResponse,
    VMUpdate,
    VmSpec,
    Volume,
    VolumeCreate,
)
from vmhost.services.store import VMStore
from vmhost.storage.locations import StorageLocations
from vmhost.storage.volumes import VolumeManager
from vmhost.utils.context import operation_context
from vmhost.utils.logger import get_logger
from vmhost.utils.telemetry import get_tracer, add_span_attributes, add_span_event

logger = get_logger(__name__)
tracer = get_tracer()

PUBLISHED_PORT_STATES = (VMStatus.STARTING, VMStatus.RUNNING)


@dataclass
class RuntimeState:
    """Ephemeral runtime of one VM; replaced wholesale on every transition to stopped.

    ``port`` stays reserved in the allocator for as long as a process may
    still be bound to it, but is only published while starting or running.
    """

    status: VMStatus = VMStatus.STOPPED
    handle: Optional[ProcessHandle] = None
    port: Optional[int] = None
    websocket_port: Optional[int] = None
    network: Optional[ResolvedNetwork] = None
    started_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def console_port(self) -> Optional[int]:
        return self.port if self.status in PUBLISHED_PORT_STATES else None

    def snapshot(self) -> RuntimeInfo:
        published = self.status in PUBLISHED_PORT_STATES
        return RuntimeInfo(
            status=self.status,
            pid=self.handle.pid if self.handle and self.handle.returncode is None else None,
            console_port=self.console_port,
            websocket_port=self.websocket_port if published else None,
            tap_device=self.network.tap_device if self.network else None,
            started_at=self.started_at,
            error_kind=self.error_kind,
            error_message=self.error_message,
        )


@dataclass
class VMEntry:
    """Registry slot: specification plus runtime and any in-flight background task."""

    spec: VmSpec
    runtime: RuntimeState = field(default_factory=RuntimeState)
    task: Optional[asyncio.Task] = None

    def response(self) -> VMResponse:
        return VMResponse(spec=self.spec.model_copy(deep=True), runtime=self.runtime.snapshot())


def _validate_resources(cpu_count: Optional[int], memory_mb: Optional[int]) -> None:
    if cpu_count is not None and not MIN_CPUS <= cpu_count <= MAX_CPUS:
        raise VMValidationError(f"cpu_count must be between {MIN_CPUS} and {MAX_CPUS}")
    if memory_mb is not None and not MIN_MEMORY_MB <= memory_mb <= MAX_MEMORY_MB:
        raise VMValidationError(
            f"memory_mb must be between {MIN_MEMORY_MB} and {MAX_MEMORY_MB}"
        )


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


class VMRegistry:
    """Owns VM specifications and runtime state, and drives the other components."""

    def __init__(
        self,
        store: VMStore,
        volumes: VolumeManager,
        locations: StorageLocations,
        ports: PortAllocator,
        network: NetworkResolver,
        supervisor: ProcessSupervisor,
        launcher: LaunchBuilder,
        log_dir: Optional[Path] = None,
        readiness_timeout: float = 10.0,
        shutdown_grace_period: float = 30.0,
        kill_timeout: float = 5.0,
        poll_interval: float = 0.5,
        monitor_interval: float = 5.0,
        display_base: int = 5900,
        websocket_base: Optional[int] = 6080,
    ):
        self.store = store
        self.volumes = volumes
        self.locations = locations
        self.ports = ports
        self.network = network
        self.supervisor = supervisor
        self.launcher = launcher
        self.log_dir = log_dir
        self.readiness_timeout = readiness_timeout
        self.shutdown_grace_period = shutdown_grace_period
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval
        self.monitor_interval = monitor_interval
        self.display_base = display_base
        self.websocket_base = websocket_base

        self._entries: Dict[str, VMEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._monitor: Optional[asyncio.Task] = None

    # Service lifecycle

    async def open(self, auto_start: bool = True) -> None:
        """Load stored specifications, start the liveness monitor and auto-start VMs."""
        self.locations.ensure()
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        for spec in await self.store.load_all():
            entry = self._entries[spec.name] = VMEntry(spec=spec)
            self._adopt_survivor(entry)

        logger.info("VM registry loaded", extra={"vm_count": len(self._entries)})

        self._monitor = asyncio.create_task(self._monitor_loop(), name="vm-liveness-monitor")

        if auto_start:
            for name, entry in list(self._entries.items()):
                if not entry.spec.auto_start:
                    continue
                try:
                    await self.start(name)
                except VMHostError as e:
                    logger.error(
                        "Auto-start failed",
                        extra={"vm_name": name, "error": e.detail, "error_type": e.kind},
                    )

    async def close(self, stop_running: bool = True) -> None:
        """Stop the monitor and, optionally, every running VM."""
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None

        if stop_running:
            for name, entry in list(self._entries.items()):
                if entry.runtime.status in (VMStatus.RUNNING, VMStatus.ERROR):
                    try:
                        await self.stop(name)
                    except VMHostError as e:
                        logger.warning(
                            "Stop on shutdown failed",
                            extra={"vm_name": name, "error": e.detail},
                        )

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.network.allocator is not None:
            await self.network.allocator.close()

        logger.info("VM registry closed")

    # Internals

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        """Hold the per-VM lock of ``name``.

        The lock is discarded once no caller holds or awaits it and no VM of
        that name exists, so failed creates and deletes leave nothing behind.
        """
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                if name not in self._entries:
                    del self._locks[name]

    def _require(self, name: str) -> VMEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise VMNotFound(f"VM '{name}' not found")
        return entry

    def _require_stopped(self, entry: VMEntry, operation: str) -> None:
        status = entry.runtime.status
        if status is not VMStatus.STOPPED:
            raise InvalidState(
                f"Cannot {operation} VM '{entry.spec.name}' while it is {status.value}. "
                "Stop it first."
            )

    def _log_path(self, name: str) -> Optional[Path]:
        return self.log_dir / f"{name}.log" if self.log_dir else None

    def _websocket_port(self, console_port: int) -> Optional[int]:
        if self.websocket_base is None:
            return None
        return self.websocket_base + (console_port - self.display_base)

    def _spawn_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"vm:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _release_port(self, runtime: RuntimeState) -> None:
        if runtime.port is not None:
            self.ports.release(runtime.port)
            runtime.port = None

    async def _release_runtime(self, entry: VMEntry) -> None:
        """Give back every host resource held by the current runtime."""
        runtime = entry.runtime
        self._release_port(runtime)
        if runtime.network is not None:
            await self.network.unresolve(runtime.network)
            runtime.network = None

    def _fail(self, entry: VMEntry, error: VMHostError) -> None:
        runtime = entry.runtime
        runtime.status = VMStatus.ERROR
        runtime.error_kind = error.kind
        runtime.error_message = error.detail
        append_log(self._log_path(entry.spec.name), f"ERROR {error.kind}: {error.detail}")
        logger.error(
            "VM entered error state",
            extra={"vm_name": entry.spec.name, "error": error.detail, "error_type": error.kind},
        )

    def _adopt_survivor(self, entry: VMEntry) -> None:
        """Attach a hypervisor left running by an earlier service instance.

        The VM goes to error with the process attached: start and delete are
        refused until a stop reclaims it.
        """
        name = entry.spec.name
        log_path = self._log_path(name)
        handle = self.supervisor.find_running(
            name,
            qmp_socket=log_path.with_suffix(".qmp") if log_path else None,
            log_path=log_path,
        )
        if handle is None:
            return

        entry.runtime.handle = handle
        entry.runtime.started_at = handle.started_at
        self._fail(
            entry,
            InvalidState(
                f"Hypervisor process {handle.pid} of VM '{name}' survived a service "
                "restart; stop the VM to reclaim it"
            ),
        )

    def _refresh(self, entry: VMEntry) -> None:
        """Surface a crashed hypervisor as a transition to error."""
        runtime = entry.runtime
        if runtime.status is not VMStatus.RUNNING or runtime.handle is None:
            return
        if self.supervisor.is_alive(runtime.handle):
            return

        code = runtime.handle.returncode
        self._release_port(runtime)
        self._fail(
            entry,
            ProcessSpawnError(f"Hypervisor process exited unexpectedly (code {code})"),
        )

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            for entry in list(self._entries.values()):
                self._refresh(entry)

    # Reads

    def list(self) -> List[VMResponse]:
        """Every VM with a current runtime snapshot, ordered by name."""
        result = []
        for name in sorted(self._entries):
            entry = self._entries[name]
            self._refresh(entry)
            result.append(entry.response())
        return result

    def get(self, name: str) -> VMResponse:
        entry = self._require(name)
        self._refresh(entry)
        return entry.response()

    def status(self, name: str) -> RuntimeInfo:
        entry = self._require(name)
        self._refresh(entry)
        return entry.runtime.snapshot()

    def get_console_port(self, name: str) -> Optional[int]:
        """Console port of a starting or running VM, otherwise None."""
        return self.status(name).console_port

    def get_console(self, name: str) -> ConsoleResponse:
        runtime = self.status(name)
        return ConsoleResponse(
            name=name,
            console_port=runtime.console_port,
            websocket_port=runtime.websocket_port,
        )

    def read_log(self, name: str, lines: int = 200) -> str:
        """Tail of the VM's hypervisor log."""
        self._require(name)
        content = tail_file(self._log_path(name), lines)
        return content or "No logs available for this VM."

    def list_storage_locations(self) -> List[StorageLocation]:
        return self.locations.list()

    async def wait_settled(self, name: str, timeout: Optional[float] = None) -> RuntimeInfo:
        """Wait for an in-flight start/stop of ``name`` to finish."""
        entry = self._require(name)
        task = entry.task
        if task is not None and not task.done():
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.status(name)

    # Create

    async def _create_disk(
        self,
        vm_name: str,
        location: StorageLocation,
        suffix: str,
        size_bytes: int,
        fmt: ImageFormat,
        created: List[Path],
    ) -> Path:
        filename = f"{vm_name}{suffix}.{fmt.extension}"
        path = await self.volumes.create_volume(location, filename, size_bytes, fmt)
        created.append(path)
        return path

    async def _release_mesh_quietly(self, mesh_address: str) -> None:
        """Return a mesh address; a failure leaves it for the operator and is logged."""
        try:
            await self.network.release_mesh(mesh_address)
        except VMHostError as e:
            logger.error(
                "Could not release mesh address",
                extra={"mesh_address": mesh_address, "error": e.detail, "error_type": e.kind},
            )

    async def _rollback(self, created: List[Path], mesh_address: Optional[str]) -> None:
        for path in reversed(created):
            try:
                await self.volumes.delete_volume(path)
            except StorageError as e:
                logger.error(
                    "Rollback could not remove volume",
                    extra={"path": str(path), "error": e.detail},
                )
        if mesh_address:
            await self._release_mesh_quietly(mesh_address)

    async def create(self, request: VMCreate) -> VMResponse:
        """Create a VM: allocate its disks, then register it as stopped.

        Raises:
            DuplicateName: If the name is taken (no files are created)
            VMValidationError: If any value is out of range
            StorageError: If a disk cannot be created (created disks are removed)
            MeshAddressError: If a requested mesh address cannot be reserved
        """
        name = request.name
        with (
            tracer.start_as_current_span("registry.vm.create"),
            operation_context("vm.create", vm_name=name),
        ):
            add_span_attributes(
                **{
                    "vm.name": name,
                    "vm.cpu_count": request.cpu_count,
                    "vm.memory_mb": request.memory_mb,
                }
            )

            async with self._locked(name):
                if name in self._entries:
                    raise DuplicateName(f"VM '{name}' already exists")

                if not NAME_PATTERN.match(name):
                    raise VMValidationError(f"Invalid VM name: '{name}'")
                _validate_resources(request.cpu_count, request.memory_mb)
                if request.disk_size_gb < 1:
                    raise VMValidationError("disk_size_gb must be at least 1")

                os_location = self.locations.get(request.storage_location)
                volume_locations = []
                for vol in request.extra_volumes:
                    if vol.id == OS_DISK_ID or not NAME_PATTERN.match(vol.id):
                        raise VMValidationError(f"Invalid volume id: '{vol.id}'")
                    if vol.size_gb < 1:
                        raise VMValidationError(f"Volume '{vol.id}' must be at least 1 GiB")
                    volume_locations.append(
                        self.locations.get(vol.storage_location or request.storage_location)
                    )

                logger.info(
                    "Creating VM",
                    extra={
                        "vm_name": name,
                        "cpu_count": request.cpu_count,
                        "memory_mb": request.memory_mb,
                        "disk_size_gb": request.disk_size_gb,
                        "extra_volumes": len(request.extra_volumes),
                    },
                )

                created: List[Path] = []
                mesh_address = None
                try:
                    if request.mesh_address:
                        mesh_address = await self.network.assign_mesh(name, request.mesh_address)

                    os_path = await self._create_disk(
                        name, os_location, "", request.disk_size_bytes, request.disk_format, created
                    )

                    extra = []
                    for vol, location in zip(request.extra_volumes, volume_locations):
                        path = await self._create_disk(
                            name, location, f"-{vol.id}", vol.size_bytes, vol.format, created
                        )
                        extra.append(
                            Volume(
                                id=vol.id,
                                path=str(path),
                                size_bytes=vol.size_bytes,
                                format=vol.format,
                                bus=vol.bus,
                                storage_location=location.name,
                            )
                        )

                    spec = VmSpec(
                        name=name,
                        cpu_count=request.cpu_count,
                        memory_mb=request.memory_mb,
                        os_disk=DiskSpec(
                            path=str(os_path),
                            size_bytes=request.disk_size_bytes,
                            format=request.disk_format,
                            bus=request.os_disk_bus,
                            storage_location=os_location.name,
                        ),
                        install_media=_blank_to_none(request.install_media),
                        drivers_media=_blank_to_none(request.drivers_media),
                        network=NetworkSpec(
                            model=request.nic_model,
                            mac_address=generate_mac(),
                            mesh_address=mesh_address,
                        ),
                        extra_volumes=extra,
                        auto_start=request.auto_start,
                    )
                    await self.store.save(spec)

                except Exception as e:
                    logger.error(
                        "VM creation failed, rolling back",
                        extra={
                            "vm_name": name,
                            "created_volumes": [str(p) for p in created],
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    await self._rollback(created, mesh_address)
                    raise

                entry = self._entries[name] = VMEntry(spec=spec)

            add_span_event("vm_created", {"vm.name": name})
            logger.info(
                "VM created",
                extra={"vm_name": name, "status": VMStatus.STOPPED.value, "mesh_address": mesh_address},
            )
            return entry.response()

    # Start

    async def start(self, name: str) -> RuntimeInfo:
        """Spawn the VM's hypervisor and return once it is starting.

        Readiness is confirmed in the background; poll :meth:`status` (or
        await :meth:`wait_settled`) to observe running or error.

        Raises:
            InvalidState: If the VM is not stopped
            PortExhausted: If no console port is free (VM stays stopped)
            ProcessSpawnError: If the hypervisor cannot be launched (VM goes to error)
        """
        with (
            tracer.start_as_current_span("registry.vm.start"),
            operation_context("vm.start", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                if entry.runtime.status is not VMStatus.STOPPED:
                    raise InvalidState(
                        f"VM '{name}' is {entry.runtime.status.value}; only a stopped VM can start"
                    )

                port = self.ports.allocate(name)
                websocket_port = self._websocket_port(port)
                runtime = RuntimeState(
                    status=VMStatus.STARTING, port=port, websocket_port=websocket_port
                )
                entry.runtime = runtime

                try:
                    runtime.network = await self.network.resolve(name, entry.spec.network)
                    config = self.launcher.build(
                        entry.spec, runtime.network, port, websocket_port
                    )
                    handle = await self.supervisor.spawn(config)
                except ProcessSpawnError as e:
                    await self._release_runtime(entry)
                    self._fail(entry, e)
                    raise
                except Exception:
                    await self._release_runtime(entry)
                    entry.runtime = RuntimeState()
                    raise

                runtime.handle = handle
                runtime.started_at = handle.started_at
                entry.task = self._spawn_task(self._await_ready(entry, handle), name)

                add_span_attributes(
                    **{"vm.name": name, "vm.console_port": port, "process.pid": handle.pid}
                )
                logger.info(
                    "VM starting",
                    extra={
                        "vm_name": name,
                        "status": runtime.status.value,
                        "console_port": port,
                        "pid": handle.pid,
                    },
                )
                return runtime.snapshot()

    async def _await_ready(self, entry: VMEntry, handle: ProcessHandle) -> None:
        name = entry.spec.name
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout

        try:
            while True:
                if not self.supervisor.is_alive(handle):
                    async with self._locked(name):
                        if entry.runtime.handle is handle:
                            await self._release_runtime(entry)
                            self._fail(
                                entry,
                                ProcessSpawnError(
                                    f"Hypervisor exited during startup (code {handle.returncode})"
                                ),
                            )
                    return

                if await self.supervisor.is_ready(handle):
                    async with self._locked(name):
                        runtime = entry.runtime
                        if runtime.handle is handle and runtime.status is VMStatus.STARTING:
                            runtime.status = VMStatus.RUNNING
                            append_log(
                                self._log_path(name),
                                f"VM running. Console port {runtime.port}",
                            )
                            logger.info(
                                "VM running",
                                extra={
                                    "vm_name": name,
                                    "status": runtime.status.value,
                                    "console_port": runtime.port,
                                    "pid": handle.pid,
                                },
                            )
                    return

                if loop.time() >= deadline:
                    break
                await asyncio.sleep(self.poll_interval)

            logger.warning(
                "Readiness window elapsed, killing hypervisor",
                extra={"vm_name": name, "timeout": self.readiness_timeout, "pid": handle.pid},
            )
            await self.supervisor.terminate(handle, graceful=False)
            exited = await self.supervisor.wait_exit(handle, self.kill_timeout)

            async with self._locked(name):
                if entry.runtime.handle is not handle:
                    return
                if exited:
                    await self._release_runtime(entry)
                self._fail(
                    entry,
                    ReadinessTimeout(
                        f"VM '{name}' did not become ready within {self.readiness_timeout}s"
                    ),
                )

        except Exception as e:
            logger.error(
                "Readiness task failed",
                extra={"vm_name": name, "error": str(e), "error_type": type(e).__name__},
            )
            async with self._locked(name):
                if entry.runtime.handle is handle:
                    self._fail(entry, ProcessSpawnError(f"Readiness check failed: {e}"))

    # Stop

    async def stop(self, name: str) -> RuntimeInfo:
        """Request shutdown and return once the VM is stopping.

        A stopped VM is left as is. An errored VM without a live process is
        cleaned up and stopped immediately.

        Raises:
            InvalidState: If the VM is starting or already stopping
        """
        with (
            tracer.start_as_current_span("registry.vm.stop"),
            operation_context("vm.stop", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                runtime = entry.runtime

                if runtime.status is VMStatus.STOPPED:
                    logger.info("VM already stopped", extra={"vm_name": name})
                    return runtime.snapshot()

                if runtime.status in (VMStatus.STARTING, VMStatus.STOPPING):
                    raise InvalidState(
                        f"VM '{name}' is {runtime.status.value}; wait for it to settle"
                    )

                alive = runtime.handle is not None and self.supervisor.is_alive(runtime.handle)
                if not alive:
                    await self._release_runtime(entry)
                    entry.runtime = RuntimeState()
                    append_log(self._log_path(name), "Recovered from error state")
                    logger.info(
                        "VM recovered from error", extra={"vm_name": name, "status": "stopped"}
                    )
                    return entry.runtime.snapshot()

                runtime.status = VMStatus.STOPPING
                entry.task = self._spawn_task(self._await_shutdown(entry, runtime.handle), name)

                logger.info(
                    "VM stopping",
                    extra={"vm_name": name, "status": runtime.status.value, "pid": runtime.handle.pid},
                )
                return runtime.snapshot()

    async def _await_shutdown(self, entry: VMEntry, handle: ProcessHandle) -> None:
        name = entry.spec.name
        escalated = False

        try:
            await self.supervisor.terminate(handle, graceful=True)
            exited = await self.supervisor.wait_exit(handle, self.shutdown_grace_period)

            if not exited:
                escalated = True
                logger.warning(
                    "Graceful shutdown timed out, forcing termination",
                    extra={
                        "vm_name": name,
                        "grace_period": self.shutdown_grace_period,
                        "pid": handle.pid,
                    },
                )
                await self.supervisor.terminate(handle, graceful=False)
                exited = await self.supervisor.wait_exit(handle, self.kill_timeout)
        except Exception as e:
            logger.error(
                "Shutdown task failed",
                extra={"vm_name": name, "error": str(e), "error_type": type(e).__name__},
            )
            exited = not self.supervisor.is_alive(handle)

        async with self._locked(name):
            if entry.runtime.handle is not handle:
                return

            if not exited:
                self._fail(
                    entry,
                    ShutdownTimeout(f"VM '{name}' process {handle.pid} did not exit after kill"),
                )
                return

            await self._release_runtime(entry)
            entry.runtime = RuntimeState()
            if escalated:
                note = ShutdownTimeout(
                    f"Graceful shutdown exceeded {self.shutdown_grace_period}s; process was killed"
                )
                entry.runtime.error_kind = note.kind
                entry.runtime.error_message = note.detail

            append_log(self._log_path(name), "VM stopped")
            logger.info(
                "VM stopped",
                extra={"vm_name": name, "status": VMStatus.STOPPED.value, "forced": escalated},
            )

    # Update

    async def update(self, name: str, changes: VMUpdate) -> VMResponse:
        """Change a stopped VM's specification; takes effect on the next start.

        Raises:
            InvalidState: If the VM is not stopped
            VMValidationError: If a value is out of range
            InvalidResize: If the OS disk would shrink
        """
        with (
            tracer.start_as_current_span("registry.vm.update"),
            operation_context("vm.update", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                self._require_stopped(entry, "edit")
                _validate_resources(changes.cpu_count, changes.memory_mb)

                spec = entry.spec.model_copy(deep=True)
                if changes.cpu_count is not None:
                    spec.cpu_count = changes.cpu_count
                if changes.memory_mb is not None:
                    spec.memory_mb = changes.memory_mb
                if changes.install_media is not None:
                    spec.install_media = _blank_to_none(changes.install_media)
                if changes.drivers_media is not None:
                    spec.drivers_media = _blank_to_none(changes.drivers_media)
                if changes.os_disk_bus is not None:
                    spec.os_disk.bus = changes.os_disk_bus
                if changes.nic_model is not None:
                    spec.network.model = changes.nic_model
                if changes.auto_start is not None:
                    spec.auto_start = changes.auto_start

                new_size = None
                if changes.disk_size_gb is not None:
                    new_size = changes.disk_size_gb * GIB
                    if new_size < spec.os_disk.size_bytes:
                        raise InvalidResize(
                            f"OS disk cannot shrink from {spec.os_disk.size_bytes} to {new_size} bytes"
                        )
                    if new_size == spec.os_disk.size_bytes:
                        new_size = None

                old_mesh = spec.network.mesh_address
                new_mesh = old_mesh
                reserved = None
                requested = changes.mesh_address
                if requested is not None:
                    if requested == "":
                        new_mesh = None
                    elif requested == MESH_AUTO:
                        if old_mesh is None:
                            reserved = new_mesh = await self.network.assign_mesh(name, MESH_AUTO)
                    elif requested != old_mesh:
                        reserved = new_mesh = await self.network.assign_mesh(name, requested)
                spec.network.mesh_address = new_mesh

                try:
                    if new_size is not None:
                        spec.os_disk.size_bytes = await self.volumes.grow_volume(
                            Path(spec.os_disk.path), new_size, spec.os_disk.format
                        )
                    await self.store.save(spec)
                except Exception:
                    if reserved:
                        await self._release_mesh_quietly(reserved)
                    raise

                entry.spec = spec
                if old_mesh and old_mesh != new_mesh:
                    await self._release_mesh_quietly(old_mesh)

                logger.info(
                    "VM updated",
                    extra={
                        "vm_name": name,
                        "cpu_count": spec.cpu_count,
                        "memory_mb": spec.memory_mb,
                        "mesh_address": new_mesh,
                    },
                )
                return entry.response()

    # Volumes

    async def add_volume(self, name: str, request: VolumeCreate) -> VMResponse:
        """Create and attach an extra volume to a stopped VM."""
        with (
            tracer.start_as_current_span("registry.volume.add"),
            operation_context("vm.volume.add", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                self._require_stopped(entry, "add a volume to")

                if request.id == OS_DISK_ID or entry.spec.volume(request.id) is not None:
                    raise VMValidationError(f"Volume '{request.id}' already exists on '{name}'")
                location = self.locations.get(request.storage_location)

                created: List[Path] = []
                path = await self._create_disk(
                    name, location, f"-{request.id}", request.size_bytes, request.format, created
                )
                spec = entry.spec.model_copy(deep=True)
                spec.extra_volumes.append(
                    Volume(
                        id=request.id,
                        path=str(path),
                        size_bytes=request.size_bytes,
                        format=request.format,
                        bus=request.bus,
                        storage_location=location.name,
                    )
                )
                try:
                    await self.store.save(spec)
                except Exception:
                    await self._rollback(created, None)
                    raise

                entry.spec = spec
                logger.info(
                    "Volume added",
                    extra={"vm_name": name, "volume_id": request.id, "size_bytes": request.size_bytes},
                )
                return entry.response()

    async def remove_volume(self, name: str, volume_id: str) -> VMResponse:
        """Detach an extra volume from a stopped VM and delete its file."""
        with (
            tracer.start_as_current_span("registry.volume.remove"),
            operation_context("vm.volume.remove", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                self._require_stopped(entry, "remove a volume from")

                if volume_id == OS_DISK_ID:
                    raise VMValidationError("The OS disk cannot be removed")
                volume = entry.spec.volume(volume_id)
                if volume is None:
                    raise VMValidationError(f"Volume '{volume_id}' not found on '{name}'")

                await self.volumes.delete_volume(Path(volume.path))

                spec = entry.spec.model_copy(deep=True)
                spec.extra_volumes = [v for v in spec.extra_volumes if v.id != volume_id]
                await self.store.save(spec)
                entry.spec = spec

                logger.info("Volume removed", extra={"vm_name": name, "volume_id": volume_id})
                return entry.response()

    async def resize_volume(self, name: str, volume_id: str, new_size_bytes: int) -> VMResponse:
        """Grow a volume (``os`` addresses the OS disk) of a stopped VM.

        Raises:
            InvalidResize: If ``new_size_bytes`` is not larger than the current size
        """
        with (
            tracer.start_as_current_span("registry.volume.resize"),
            operation_context("vm.volume.resize", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                self._require_stopped(entry, "resize a volume of")

                spec = entry.spec.model_copy(deep=True)
                volume = spec.volume(volume_id)
                if volume is None:
                    raise VMValidationError(f"Volume '{volume_id}' not found on '{name}'")

                volume.size_bytes = await self.volumes.grow_volume(
                    Path(volume.path), new_size_bytes, volume.format
                )
                await self.store.save(spec)
                entry.spec = spec

                logger.info(
                    "Volume resized",
                    extra={"vm_name": name, "volume_id": volume_id, "size_bytes": new_size_bytes},
                )
                return entry.response()

    # Delete

    async def delete(self, name: str) -> None:
        """Delete a stopped VM and every one of its disk files.

        If any file cannot be removed the VM stays registered so the
        operation can be retried.

        Raises:
            InvalidState: If the VM is not stopped
            StorageError: If a disk file cannot be removed
        """
        with (
            tracer.start_as_current_span("registry.vm.delete"),
            operation_context("vm.delete", vm_name=name),
        ):
            async with self._locked(name):
                entry = self._require(name)
                self._refresh(entry)
                self._require_stopped(entry, "delete")

                failures = []
                for disk in entry.spec.disks():
                    try:
                        await self.volumes.delete_volume(Path(disk.path))
                    except StorageError as e:
                        failures.append(e.detail)

                if failures:
                    logger.error(
                        "VM delete incomplete, keeping registry entry",
                        extra={"vm_name": name, "failures": failures},
                    )
                    raise StorageError(
                        f"Could not delete all disks of '{name}': " + "; ".join(failures)
                    )

                # Disks are gone, so the VM is deleted whatever the allocator says
                await self.store.delete(name)
                del self._entries[name]

                mesh_address = entry.spec.network.mesh_address
                if mesh_address:
                    await self._release_mesh_quietly(mesh_address)

                log_path = self._log_path(name)
                if log_path is not None:
                    for path in (log_path, log_path.with_suffix(".qmp")):
                        try:
                            path.unlink(missing_ok=True)
                        except OSError as e:
                            logger.warning(
                                "Cannot remove VM runtime file",
                                extra={"path": str(path), "error": str(e)},
                            )

            logger.info("VM deleted", extra={"vm_name": name, "mesh_address": mesh_address})
