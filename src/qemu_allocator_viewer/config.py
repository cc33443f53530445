"""Runtime settings for the viewer."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field

POLL_INTERVAL = 1.0  # seconds between buffer reads
HANDSHAKE_TIMEOUT = 5.0
REQUEST_TIMEOUT = 10.0
READ_CHUNK = 4096  # bytes per "x" monitor command
SHM_READ_ATTEMPTS = 3

# Exported names the kernel may use for its debug buffer, tried in order.
DEFAULT_SYMBOLS: tuple[str, ...] = (
    "memory_debug_buffer",
    "g_memoryDebugBuffer",
    "MemoryDebugBuffer",
    "__memory_debug_buffer",
)


@dataclass(frozen=True)
class ViewerConfig:
    """Settings for one viewer process."""

    qmp_socket: str | None = None
    shm_path: str | None = None
    kernel: str | None = None
    interval: float = POLL_INTERVAL
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT
    read_chunk: int = READ_CHUNK
    shm_read_attempts: int = SHM_READ_ATTEMPTS
    symbols: tuple[str, ...] = field(default=DEFAULT_SYMBOLS)
    nm: str = "nm"
    headless: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> ViewerConfig:
        """Build a config from the CLI namespace produced by :func:`build_parser`."""
        if args.qmp_sock and not args.kernel:
            msg = "--kernel is required with --qmp-sock to locate the debug buffer"
            raise ValueError(msg)
        return cls(
            qmp_socket=args.qmp_sock,
            shm_path=args.shm,
            kernel=args.kernel,
            interval=max(0.1, args.interval),
            symbols=tuple(args.symbol) if args.symbol else DEFAULT_SYMBOLS,
            nm=args.nm,
            headless=args.headless,
            verbose=args.verbose,
        )


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line parser for the viewer."""
    p = argparse.ArgumentParser(
        description="Live view of a guest kernel's page allocator without pausing it",
    )
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--qmp-sock",
        help="QMP UNIX socket path (e.g., /tmp/qmp-cosmos.sock)",
    )
    source.add_argument(
        "--shm",
        help="shared-memory file the guest publishes into (e.g., /dev/shm/cosmos-debug)",
    )
    p.add_argument("--kernel", help="kernel ELF used to resolve the buffer address")
    p.add_argument("--interval", type=float, default=POLL_INTERVAL, help="seconds between reads")
    p.add_argument(
        "--symbol",
        action="append",
        help="debug buffer symbol name to look up (repeatable)",
    )
    p.add_argument("--nm", default="nm", help="nm executable used for symbol lookup")
    p.add_argument("--headless", action="store_true", help="log updates instead of plotting")
    p.add_argument("-v", "--verbose", action="store_true")
    return p
