"""Port Allocator: unique console ports from a fixed range."""

import socket
import threading
from typing import Dict, Optional

from vmhost.core.exceptions import PortExhausted
from vmhost.utils.logger import get_logger

logger = get_logger(__name__)


def port_is_bindable(port: int, host: str = "0.0.0.0") -> bool:
    """Whether nothing else on the host is listening on ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out the lowest free port in ``[start, end]``.

    All reads and writes of the in-use table happen under one lock, so two
    concurrent allocations can never return the same port.
    """

    def __init__(self, start: int, end: int, probe_host: bool = False):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self.probe_host = probe_host
        self._in_use: Dict[int, str] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self.end - self.start + 1

    def allocate(self, owner: str) -> int:
        """Reserve the lowest free port for ``owner``.

        Raises:
            PortExhausted: If every port in the range is taken
        """
        with self._lock:
            for port in range(self.start, self.end + 1):
                if port in self._in_use:
                    continue
                if self.probe_host and not port_is_bindable(port):
                    logger.debug("Console port busy on host", extra={"port": port})
                    continue
                self._in_use[port] = owner
                logger.info("Console port allocated", extra={"port": port, "owner": owner})
                return port

        logger.error(
            "Console port range exhausted",
            extra={"start": self.start, "end": self.end, "in_use": len(self._in_use)},
        )
        raise PortExhausted(
            f"No free console port in {self.start}-{self.end} "
            f"({len(self._in_use)}/{self.capacity} in use)"
        )

    def release(self, port: int) -> bool:
        """Return ``port`` to the free set. Returns False if it was not allocated."""
        with self._lock:
            owner = self._in_use.pop(port, None)

        if owner is None:
            logger.warning("Released console port was not allocated", extra={"port": port})
            return False

        logger.info("Console port released", extra={"port": port, "owner": owner})
        return True

    def owner_of(self, port: int) -> Optional[str]:
        with self._lock:
            return self._in_use.get(port)

    def in_use(self) -> Dict[int, str]:
        """Copy of the port -> owner table."""
        with self._lock:
            return dict(self._in_use)
