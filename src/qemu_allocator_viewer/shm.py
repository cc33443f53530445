"""Shared-memory transport: polls the file QEMU backs the ivshmem device with."""

from __future__ import annotations

import logging
import os

import numpy as np

from .buffer import BUFFER_SIZE
from .config import SHM_READ_ATTEMPTS
from .errors import NotReady, TornRead, TransportError

logger = logging.getLogger(__name__)


class SharedMemoryTransport:
    """Reads the debug buffer straight out of a shared-memory file.

    The file *is* the buffer, so there is no handshake and the address passed
    to :meth:`read` is ignored.  The guest writes while we read; each read is
    repeated until two consecutive copies of the buffer region agree.
    """

    requires_address = False

    def __init__(self, path: str, *, attempts: int = SHM_READ_ATTEMPTS) -> None:
        self.path = path
        self.attempts = max(1, attempts)
        self._seen = False

    def is_connected(self) -> bool:
        """Return ``True`` once the shared-memory file has been seen."""
        return self._seen

    async def connect(self) -> None:
        """Check that the shared-memory file exists."""
        if not os.path.exists(self.path):
            raise NotReady(f"shared memory file {self.path} not yet created")
        if not self._seen:
            logger.info("Using shared memory file: %s", self.path)
        self._seen = True

    def _read_file(self) -> np.ndarray:
        try:
            return np.fromfile(self.path, dtype=np.uint8)
        except FileNotFoundError as exc:
            self._seen = False
            raise NotReady(f"shared memory file {self.path} not yet created") from exc
        except OSError as exc:
            raise TransportError(f"Failed to read {self.path}: {exc}") from exc

    async def read(self, size: int, address: int | None = None) -> bytes:
        """Return the whole file; ``size`` and ``address`` are not used."""
        del size, address
        previous = self._read_file()
        for _ in range(self.attempts):
            current = self._read_file()
            if np.array_equal(previous[:BUFFER_SIZE], current[:BUFFER_SIZE]):
                return current.tobytes()
            logger.debug("Shared buffer changed between reads, retrying")
            previous = current
        raise TornRead(f"{self.path} kept changing across {self.attempts} reads")

    def disconnect(self) -> None:
        """Forget the file; the next read checks for it again."""
        self._seen = False
