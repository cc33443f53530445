"""Transport capability and the per-session choice between QMP and shared memory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .config import ViewerConfig
from .errors import TransportError
from .qmp import QMPTransport
from .shm import SharedMemoryTransport


class Transport(Protocol):
    """What the polling controller needs from a way of reading the buffer."""

    requires_address: bool

    async def connect(self) -> None:
        """Make the transport usable; raises ``TransportError``."""

    async def read(self, size: int, address: int | None = None) -> bytes:
        """Return ``size`` bytes of the buffer; raises ``TransportError``."""

    def disconnect(self) -> None:
        """Release the connection, if any."""

    def is_connected(self) -> bool:
        """Return ``True`` once :meth:`connect` has succeeded."""


@dataclass(frozen=True)
class GuestSession:
    """What the debugging session tells us about the running guest."""

    qmp_socket: str | None = None
    shm_path: str | None = None
    kernel: str | None = None


def open_transport(session: GuestSession, config: ViewerConfig | None = None) -> Transport:
    """Pick the transport variant for ``session`` based on the data it carries."""
    config = config or ViewerConfig()
    if session.qmp_socket:
        return QMPTransport(
            session.qmp_socket,
            handshake_timeout=config.handshake_timeout,
            request_timeout=config.request_timeout,
            chunk_size=config.read_chunk,
        )
    if session.shm_path:
        return SharedMemoryTransport(session.shm_path, attempts=config.shm_read_attempts)
    raise TransportError("debug session has neither a QMP socket nor a shared memory path")
