"""Translate a resolved VM specification into a hypervisor invocation."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from vmhost.core.exceptions import ProcessSpawnError
from vmhost.models.vm import DiskBus
from vmhost.network.resolver import ResolvedNetwork
from vmhost.schemas.vm import DiskSpec, VmSpec

IDE_SLOTS = 4  # two channels, master and slave
AHCI_PORTS = 6

BOOT_CDROM = "cdrom"
BOOT_DISK = "disk"


@dataclass
class LaunchConfig:
    """Everything needed to spawn one hypervisor process."""

    name: str
    argv: List[str]
    boot_order: List[str]
    console_port: int
    websocket_port: Optional[int] = None
    qmp_socket: Optional[Path] = None
    log_path: Optional[Path] = None
    required_files: List[Path] = field(default_factory=list)


class _Buses:
    """Slot bookkeeping for the emulated storage controllers."""

    def __init__(self) -> None:
        self.ide = 0
        self.sata = 0
        self.ahci_added = False

    def ide_slot(self) -> str:
        if self.ide >= IDE_SLOTS:
            raise ProcessSpawnError(
                f"Invalid device configuration: more than {IDE_SLOTS} IDE devices"
            )
        slot = f"bus=ide.{self.ide // 2},unit={self.ide % 2}"
        self.ide += 1
        return slot

    def sata_slot(self, argv: List[str]) -> str:
        if self.sata >= AHCI_PORTS:
            raise ProcessSpawnError(
                f"Invalid device configuration: more than {AHCI_PORTS} SATA devices"
            )
        if not self.ahci_added:
            argv += ["-device", "ahci,id=ahci0"]
            self.ahci_added = True
        slot = f"bus=ahci0.{self.sata}"
        self.sata += 1
        return slot


class LaunchBuilder:
    """Builds QEMU command lines.

    Each disk is declared as a backend ``-drive`` plus a frontend ``-device``
    chosen by the disk's bus, so boot order can be expressed with
    ``bootindex``: the install CD-ROM first when present, otherwise the OS disk.
    """

    def __init__(
        self,
        binary: str = "qemu-system-x86_64",
        kvm: bool = True,
        listen_host: str = "0.0.0.0",
        display_base: int = 5900,
        run_dir: Optional[Path] = None,
    ):
        self.binary = binary
        self.kvm = kvm
        self.listen_host = listen_host
        self.display_base = display_base
        self.run_dir = run_dir

    def _disk_args(
        self, disk: DiskSpec, index: int, bootindex: Optional[int], buses: _Buses, argv: List[str]
    ) -> List[str]:
        drive_id = f"disk{index}"
        args = ["-drive", f"file={disk.path},format={disk.format.value},if=none,id={drive_id}"]
        boot = f",bootindex={bootindex}" if bootindex is not None else ""

        if disk.bus is DiskBus.VIRTIO:
            device = f"virtio-blk-pci,drive={drive_id}{boot}"
        elif disk.bus is DiskBus.IDE:
            device = f"ide-hd,drive={drive_id},{buses.ide_slot()}{boot}"
        elif disk.bus is DiskBus.SATA:
            device = f"ide-hd,drive={drive_id},{buses.sata_slot(argv)}{boot}"
        else:
            raise ProcessSpawnError(f"Unsupported disk bus: {disk.bus}")

        return args + ["-device", device]

    def _cdrom_args(
        self, media: str, index: int, bootindex: Optional[int], buses: _Buses
    ) -> List[str]:
        drive_id = f"cd{index}"
        boot = f",bootindex={bootindex}" if bootindex is not None else ""
        return [
            "-drive",
            f"file={media},media=cdrom,readonly=on,if=none,id={drive_id}",
            "-device",
            f"ide-cd,drive={drive_id},{buses.ide_slot()}{boot}",
        ]

    def _network_args(self, network: ResolvedNetwork) -> List[str]:
        if network.tap_device:
            netdev = f"tap,id=net0,ifname={network.tap_device},script=no,downscript=no"
        else:
            netdev = "user,id=net0"
        return [
            "-netdev",
            netdev,
            "-device",
            f"{network.device},netdev=net0,mac={network.mac_address}",
        ]

    def build(
        self,
        spec: VmSpec,
        network: ResolvedNetwork,
        console_port: int,
        websocket_port: Optional[int] = None,
    ) -> LaunchConfig:
        """Build the launch configuration for ``spec``.

        Raises:
            ProcessSpawnError: If the device layout cannot be expressed
        """
        argv: List[str] = [
            self.binary,
            "-name",
            spec.name,
            "-m",
            f"{spec.memory_mb}M",
            "-smp",
            str(spec.cpu_count),
        ]

        if self.kvm:
            argv += ["-enable-kvm", "-cpu", "host"]
        else:
            argv += ["-cpu", "qemu64"]

        buses = _Buses()
        install_first = bool(spec.install_media)
        boot_order = [BOOT_CDROM, BOOT_DISK] if install_first else [BOOT_DISK]
        required = [Path(disk.path) for disk in spec.disks()]

        argv += self._disk_args(
            spec.os_disk, 0, 1 if install_first else 0, buses, argv
        )
        for index, volume in enumerate(spec.extra_volumes, start=1):
            argv += self._disk_args(volume, index, None, buses, argv)

        if spec.install_media:
            argv += self._cdrom_args(spec.install_media, 0, 0, buses)
            required.append(Path(spec.install_media))
        if spec.drivers_media:
            argv += self._cdrom_args(spec.drivers_media, 1, None, buses)
            required.append(Path(spec.drivers_media))

        argv += self._network_args(network)

        display = console_port - self.display_base
        if display < 0:
            raise ProcessSpawnError(
                f"Console port {console_port} is below display base {self.display_base}"
            )
        vnc = f"{self.listen_host}:{display}"
        if websocket_port is not None:
            vnc += f",websocket={self.listen_host}:{websocket_port}"
        argv += ["-vnc", vnc]

        qmp_socket = log_path = None
        if self.run_dir is not None:
            qmp_socket = self.run_dir / f"{spec.name}.qmp"
            log_path = self.run_dir / f"{spec.name}.log"
            argv += ["-qmp", f"unix:{qmp_socket},server=on,wait=off"]

        return LaunchConfig(
            name=spec.name,
            argv=argv,
            boot_order=boot_order,
            console_port=console_port,
            websocket_port=websocket_port,
            qmp_socket=qmp_socket,
            log_path=log_path,
            required_files=required,
        )
