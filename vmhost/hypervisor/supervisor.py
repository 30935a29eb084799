"""Process Supervisor: spawns, probes and terminates hypervisor processes."""

import asyncio
import json
import os
import shutil
import signal
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from vmhost.core.exceptions import ProcessSpawnError
from vmhost.hypervisor.launch import LaunchConfig
from vmhost.models.base import utcnow
from vmhost.utils.logger import get_logger
from vmhost.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()


class QMPError(Exception):
    """Monitor socket conversation failed."""

    pass


@dataclass
class ProcessHandle:
    """A spawned hypervisor process."""

    pid: int
    process: asyncio.subprocess.Process
    config: LaunchConfig
    started_at: datetime = field(default_factory=utcnow)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode


class AdoptedProcess:
    """A hypervisor started by an earlier service instance.

    It is not our child, so its exit is observed by polling the pid and its
    exit status is unknown (reported as -1).
    """

    def __init__(self, pid: int, poll_interval: float = 0.1):
        self.pid = pid
        self.poll_interval = poll_interval
        self._returncode: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        if self._returncode is None and not pid_alive(self.pid):
            self._returncode = -1
        return self._returncode

    def terminate(self) -> None:
        os.kill(self.pid, signal.SIGTERM)

    def kill(self) -> None:
        os.kill(self.pid, signal.SIGKILL)

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(self.poll_interval)
        return self.returncode


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Owned by another user
        pass
    return True


def find_hypervisor(
    name: str, proc_root: Path = Path("/proc")
) -> Optional[Tuple[int, List[str]]]:
    """Pid and argv of a process whose command line carries ``-name <name>``."""
    try:
        entries = sorted(p for p in proc_root.iterdir() if p.name.isdigit())
    except OSError:
        return None

    for entry in entries:
        try:
            raw = (entry / "cmdline").read_bytes()
        except OSError:
            continue
        argv: List[str] = [a.decode(errors="replace") for a in raw.split(b"\0") if a]
        for flag, value in zip(argv, argv[1:]):
            if flag == "-name" and value == name:
                return int(entry.name), argv
    return None


def tail_file(path: Optional[Path], lines: int = 20) -> str:
    """Last ``lines`` lines of a text file, or an empty string."""
    if path is None:
        return ""
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def append_log(path: Optional[Path], message: str) -> None:
    """Append a timestamped marker line to a VM log file."""
    if path is None:
        return
    try:
        with open(path, "a") as f:
            f.write(f"[{utcnow().strftime('%Y-%m-%d %H:%M:%S')}] {message}\n")
    except OSError as e:
        logger.warning("Cannot write VM log", extra={"path": str(path), "error": str(e)})


async def qmp_command(socket_path: Path, command: str, timeout: float = 2.0) -> dict:
    """Run one QMP command and return its response."""

    async def _converse() -> dict:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        try:
            greeting = json.loads(await reader.readline())
            if "QMP" not in greeting:
                raise QMPError(f"Unexpected QMP greeting: {greeting}")

            for execute in ("qmp_capabilities", command):
                writer.write(json.dumps({"execute": execute}).encode() + b"\n")
                await writer.drain()
                while True:
                    response = json.loads(await reader.readline())
                    # Asynchronous events may arrive before the reply
                    if "event" not in response:
                        break
                if "error" in response:
                    raise QMPError(f"{execute} failed: {response['error']}")
            return response
        finally:
            writer.close()

    try:
        return await asyncio.wait_for(_converse(), timeout)
    except (OSError, ValueError, asyncio.TimeoutError) as e:
        raise QMPError(f"QMP {command} failed: {e}") from e


class ProcessSupervisor:
    """Owns hypervisor child processes.

    Spawn failures (missing binary, missing media, a process that dies during
    the settle window) are raised from :meth:`spawn`; later crashes are only
    visible through :meth:`is_alive`.
    """

    def __init__(
        self,
        settle_time: float = 0.5,
        probe_timeout: float = 1.0,
        proc_root: Path = Path("/proc"),
    ):
        self.settle_time = settle_time
        self.probe_timeout = probe_timeout
        self.proc_root = proc_root

    async def spawn(self, config: LaunchConfig) -> ProcessHandle:
        """Launch the hypervisor described by ``config``.

        Raises:
            ProcessSpawnError: If the process cannot be launched or exits immediately
        """
        with tracer.start_as_current_span("hypervisor.spawn") as span:
            binary = config.argv[0]
            add_span_attributes(
                **{"vm.name": config.name, "hypervisor.binary": binary}
            )

            if shutil.which(binary) is None:
                append_log(config.log_path, f"{binary} not found")
                raise ProcessSpawnError(
                    f"{binary} not found. Install QEMU (e.g. qemu-system-x86)"
                )

            for path in config.required_files:
                if not path.exists():
                    append_log(config.log_path, f"Missing file: {path}")
                    raise ProcessSpawnError(f"File not found: {path}")

            if config.qmp_socket is not None:
                config.qmp_socket.unlink(missing_ok=True)

            append_log(config.log_path, f"=== Starting VM '{config.name}' ===")
            append_log(config.log_path, "Command: " + " ".join(config.argv))

            log_file = open(config.log_path, "ab") if config.log_path else None
            try:
                process = await asyncio.create_subprocess_exec(
                    *config.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file or asyncio.subprocess.DEVNULL,
                    stderr=log_file or asyncio.subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                span.record_exception(e)
                append_log(config.log_path, f"Failed to execute hypervisor: {e}")
                raise ProcessSpawnError(f"Failed to execute {binary}: {e}") from e
            finally:
                if log_file is not None:
                    log_file.close()

            handle = ProcessHandle(pid=process.pid, process=process, config=config)

            # A bad device configuration makes the hypervisor exit right away
            if await self.wait_exit(handle, self.settle_time):
                output = tail_file(config.log_path)
                logger.error(
                    "Hypervisor exited immediately",
                    extra={"vm_name": config.name, "return_code": process.returncode},
                )
                raise ProcessSpawnError(
                    f"Hypervisor exited immediately with code {process.returncode}"
                    + (f":\n{output}" if output else "")
                )

            add_span_attributes(**{"process.pid": process.pid})
            logger.info(
                "Hypervisor process spawned",
                extra={"vm_name": config.name, "pid": process.pid},
            )
            return handle

    def is_alive(self, handle: ProcessHandle) -> bool:
        """Whether the process has not exited."""
        return handle.process.returncode is None

    async def is_ready(self, handle: ProcessHandle) -> bool:
        """Whether the process is alive and its monitor socket answers."""
        if not self.is_alive(handle):
            return False
        socket_path = handle.config.qmp_socket
        if socket_path is None:
            return True
        try:
            await qmp_command(socket_path, "query-status", self.probe_timeout)
        except QMPError:
            return False
        return True

    async def terminate(self, handle: ProcessHandle, graceful: bool) -> None:
        """Ask the guest to power down (graceful) or kill the process."""
        if not self.is_alive(handle):
            return

        if graceful:
            socket_path = handle.config.qmp_socket
            if socket_path is not None:
                try:
                    await qmp_command(socket_path, "system_powerdown", self.probe_timeout)
                    logger.info(
                        "Power-down requested",
                        extra={"vm_name": handle.config.name, "pid": handle.pid},
                    )
                    return
                except QMPError as e:
                    logger.warning(
                        "Power-down request failed, sending SIGTERM",
                        extra={"vm_name": handle.config.name, "error": str(e)},
                    )
            signal_name = "SIGTERM"
        else:
            signal_name = "SIGKILL"

        try:
            if graceful:
                handle.process.terminate()
            else:
                handle.process.kill()
        except ProcessLookupError:
            return

        logger.info(
            "Signal sent to hypervisor",
            extra={"vm_name": handle.config.name, "pid": handle.pid, "signal": signal_name},
        )

    async def wait_exit(self, handle: ProcessHandle, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the process to exit."""
        try:
            await asyncio.wait_for(handle.process.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def find_running(
        self,
        name: str,
        qmp_socket: Optional[Path] = None,
        log_path: Optional[Path] = None,
    ) -> Optional[ProcessHandle]:
        """Handle on a live hypervisor named ``name`` that this supervisor did not spawn."""
        found = find_hypervisor(name, self.proc_root)
        if found is None:
            return None

        pid, argv = found
        config = LaunchConfig(
            name=name,
            argv=argv,
            boot_order=[],
            console_port=0,
            qmp_socket=qmp_socket if qmp_socket and qmp_socket.exists() else None,
            log_path=log_path,
        )
        logger.warning(
            "Found hypervisor from a previous run",
            extra={"vm_name": name, "pid": pid},
        )
        return ProcessHandle(pid=pid, process=AdoptedProcess(pid), config=config)
