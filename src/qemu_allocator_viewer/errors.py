"""Exception hierarchy shared by the codec, transports and controller."""

from __future__ import annotations


class ViewerError(RuntimeError):
    """Base class for every error raised by the viewer."""


class DecodeError(ViewerError):
    """The debug buffer could not be turned into a snapshot."""


class BadMagic(DecodeError):
    """The buffer does not start with the sentinel; the guest is not publishing yet."""

    def __init__(self, found: int, expected: int) -> None:
        super().__init__(
            f"Invalid magic number: got 0x{found:X}, expected 0x{expected:X}"
        )
        self.found = found
        self.expected = expected


class TruncatedBuffer(DecodeError):
    """Fewer bytes than the fixed buffer layout requires."""

    def __init__(self, size: int, required: int) -> None:
        super().__init__(f"debug buffer too small: {size} bytes < {required} required")
        self.size = size
        self.required = required


class InconsistentBuffer(DecodeError):
    """Allocator counters contradict each other (usually a torn read)."""


class TransportError(ViewerError):
    """Connecting to or reading from the guest failed."""


class NotReady(TransportError):
    """The guest side has not published its buffer or socket yet."""


class TornRead(NotReady):
    """Consecutive reads of the shared buffer never agreed."""


class ResolutionError(ViewerError):
    """The debug buffer address could not be found in the symbol table."""
