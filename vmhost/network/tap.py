"""Host TAP devices that attach mesh-addressed VMs to the overlay network."""

import asyncio
import hashlib
from typing import List

from vmhost.utils.logger import get_logger

logger = get_logger(__name__)


class TapError(Exception):
    """TAP device setup failed."""

    pass


IFNAMSIZ = 15
TAP_PREFIX = "tap-"


def tap_name(vm_name: str) -> str:
    """TAP interface name for a VM (interface names are limited to 15 chars).

    Names that do not fit are shortened to a prefix plus a digest of the full
    name. The "." separator cannot occur in a VM name, so shortened names never
    clash with unshortened ones.
    """
    name = TAP_PREFIX + vm_name
    if len(name) <= IFNAMSIZ:
        return name
    digest = hashlib.sha1(vm_name.encode()).hexdigest()[:5]
    return f"{TAP_PREFIX}{vm_name[:5]}.{digest}"


class TapManager:
    """Creates TAP devices and the host routes that point a mesh address at them."""

    def __init__(self, mesh_interface: str):
        self.mesh_interface = mesh_interface

    async def _run(self, *args: str) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return 127, str(e)
        _, stderr = await process.communicate()
        return process.returncode, stderr.decode(errors="replace").strip()

    async def setup(self, tap: str, mesh_address: str) -> None:
        """Create ``tap``, bring it up and route ``mesh_address`` through it.

        Raises:
            TapError: If the device cannot be created or brought up
        """
        rc, err = await self._run("ip", "tuntap", "add", "dev", tap, "mode", "tap")
        if rc != 0 and "File exists" not in err and "EEXIST" not in err:
            raise TapError(f"TAP creation failed: {err}")

        rc, err = await self._run("ip", "link", "set", tap, "up")
        if rc != 0:
            raise TapError(f"TAP up failed: {err}")

        # Routing problems leave the guest reachable from the host only
        for cmd in self._routing_commands(tap, mesh_address):
            rc, err = await self._run(*cmd)
            if rc != 0 and "File exists" not in err:
                logger.warning(
                    "Mesh routing step failed",
                    extra={"tap": tap, "command": " ".join(cmd), "error": err},
                )

        logger.info(
            "TAP device ready",
            extra={"tap": tap, "mesh_address": mesh_address, "mesh_interface": self.mesh_interface},
        )

    def _routing_commands(self, tap: str, mesh_address: str) -> List[List[str]]:
        return [
            ["sysctl", "-w", "net.ipv4.ip_forward=1"],
            ["sysctl", "-w", f"net.ipv4.conf.{tap}.proxy_arp=1"],
            ["ip", "route", "replace", f"{mesh_address}/32", "dev", tap],
            ["iptables", "-A", "FORWARD", "-i", self.mesh_interface, "-o", tap, "-j", "ACCEPT"],
            ["iptables", "-A", "FORWARD", "-i", tap, "-o", self.mesh_interface, "-j", "ACCEPT"],
        ]

    async def teardown(self, tap: str, mesh_address: str | None = None) -> None:
        """Remove ``tap`` and its routes. Missing pieces are ignored."""
        commands = [
            ["ip", "link", "set", tap, "down"],
            ["ip", "tuntap", "del", "dev", tap, "mode", "tap"],
            ["iptables", "-D", "FORWARD", "-i", self.mesh_interface, "-o", tap, "-j", "ACCEPT"],
            ["iptables", "-D", "FORWARD", "-i", tap, "-o", self.mesh_interface, "-j", "ACCEPT"],
        ]
        if mesh_address:
            commands.append(["ip", "route", "del", f"{mesh_address}/32"])

        for cmd in commands:
            rc, err = await self._run(*cmd)
            if rc != 0:
                logger.debug(
                    "TAP teardown step skipped",
                    extra={"tap": tap, "command": " ".join(cmd), "error": err},
                )

        logger.info("TAP device removed", extra={"tap": tap})
