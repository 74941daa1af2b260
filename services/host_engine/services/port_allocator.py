"""
Where: services/host_engine/services/port_allocator.py
What: Host port reservation for function app containers.
Why: "Pick a free port" and "bind it" are separate steps; reserved ports must
not be handed to a concurrent start before the runtime binds them.
"""

import logging
import socket
import threading
from typing import Callable, Iterable, Optional, Set

logger = logging.getLogger("host_engine.port_allocator")

MAX_PICK_ATTEMPTS = 50


def pick_ephemeral_port() -> int:
    """Ask the OS for a currently unused TCP port in its ephemeral range."""
    # Bind to 0.0.0.0 so we catch conflicts with services bound to all interfaces.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("0.0.0.0", 0))
        return sock.getsockname()[1]


class PortExhaustedError(RuntimeError):
    """Raised when no unreserved free port could be found."""


class PortAllocator:
    """
    Process-wide set of host ports reserved for function app containers.
    """

    def __init__(self, picker: Optional[Callable[[], int]] = None):
        self._picker = picker or pick_ephemeral_port
        self._reserved: Set[int] = set()
        self._lock = threading.Lock()

    def reserve(self) -> int:
        """Reserve a free port that no other start in this process holds."""
        with self._lock:
            for _ in range(MAX_PICK_ATTEMPTS):
                port = self._picker()
                if port not in self._reserved:
                    self._reserved.add(port)
                    logger.debug(f"Reserved host port {port}")
                    return port
        raise PortExhaustedError(
            f"No unreserved free port found after {MAX_PICK_ATTEMPTS} attempts"
        )

    def claim(self, port: int) -> None:
        """Mark a port as reserved (e.g. the port the runtime actually bound)."""
        if port <= 0:
            return
        with self._lock:
            self._reserved.add(port)

    def claim_all(self, ports: Iterable[int]) -> None:
        for port in ports:
            self.claim(port)

    def release(self, port: int) -> None:
        with self._lock:
            if port in self._reserved:
                self._reserved.discard(port)
                logger.debug(f"Released host port {port}")

    def is_reserved(self, port: int) -> bool:
        with self._lock:
            return port in self._reserved

    @property
    def reserved(self) -> Set[int]:
        with self._lock:
            return set(self._reserved)
