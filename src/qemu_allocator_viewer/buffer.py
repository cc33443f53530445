"""Decoder for the memory debug buffer published by the guest kernel.

The kernel keeps a fixed-size, little-endian structure up to date while it
runs.  Its layout is::

    magic            u64   0x434F534D4F53 ("COSMOS")
    version          u32
    timestamp        u64
    memory_map_count u32
    memory_map[64]   {base u64, length u64, kind u64}
    ram_start        u64
    heap_end         u64
    table_location   u64   (the RAT)
    ram_size         u64
    total_page_count u64
    free_page_count  u64
    page_sample_count u32
    page_sample[1000] u8   one page kind per page, starting at ram_start

The arrays are always full-capacity wide; only the first ``*_count`` slots
carry data.  Nothing here performs I/O.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass

import numpy as np

from .errors import BadMagic, InconsistentBuffer, TruncatedBuffer

MAGIC_NUMBER = 0x434F534D4F53
MAX_MEMORY_MAP_ENTRIES = 64
MAX_PAGE_SAMPLE = 1000
PAGE_SIZE = 4096

HEADER_DTYPE = np.dtype(
    [
        ("magic", "<u8"),
        ("version", "<u4"),
        ("timestamp", "<u8"),
        ("memory_map_count", "<u4"),
    ]
)
REGION_DTYPE = np.dtype([("base", "<u8"), ("length", "<u8"), ("kind", "<u8")])
ALLOCATOR_DTYPE = np.dtype(
    [
        ("ram_start", "<u8"),
        ("heap_end", "<u8"),
        ("table_location", "<u8"),
        ("ram_size", "<u8"),
        ("total_page_count", "<u8"),
        ("free_page_count", "<u8"),
        ("page_sample_count", "<u4"),
    ]
)

MEMORY_MAP_OFFSET = HEADER_DTYPE.itemsize
ALLOCATOR_OFFSET = MEMORY_MAP_OFFSET + MAX_MEMORY_MAP_ENTRIES * REGION_DTYPE.itemsize
PAGE_SAMPLE_OFFSET = ALLOCATOR_OFFSET + ALLOCATOR_DTYPE.itemsize
BUFFER_SIZE = PAGE_SAMPLE_OFFSET + MAX_PAGE_SAMPLE  # 2612 bytes


class RegionKind(enum.IntEnum):
    """Limine memory map entry type."""

    UNKNOWN = -1
    USABLE = 0
    RESERVED = 1
    ACPI_RECLAIMABLE = 2
    ACPI_NVS = 3
    BAD_MEMORY = 4
    BOOTLOADER_RECLAIMABLE = 5
    KERNEL_AND_MODULES = 6
    FRAMEBUFFER = 7

    @classmethod
    def from_tag(cls, tag: int) -> RegionKind:
        """Map a raw tag to a kind; tags the viewer does not know map to ``UNKNOWN``."""
        try:
            return cls(tag)
        except ValueError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        """Return the human-readable name shown in the viewer."""
        return _REGION_LABELS[self]


_REGION_LABELS = {
    RegionKind.UNKNOWN: "Unknown",
    RegionKind.USABLE: "Usable",
    RegionKind.RESERVED: "Reserved",
    RegionKind.ACPI_RECLAIMABLE: "ACPI Reclaimable",
    RegionKind.ACPI_NVS: "ACPI NVS",
    RegionKind.BAD_MEMORY: "Bad Memory",
    RegionKind.BOOTLOADER_RECLAIMABLE: "Bootloader Reclaimable",
    RegionKind.KERNEL_AND_MODULES: "Kernel and Modules",
    RegionKind.FRAMEBUFFER: "Framebuffer",
}


class PageKind(enum.IntEnum):
    """Page allocator page type as stored in the RAT."""

    UNKNOWN = -1
    EMPTY = 0
    HEAP_SMALL = 3
    HEAP_MEDIUM = 5
    HEAP_LARGE = 7
    UNMANAGED = 9
    PAGE_DIRECTORY = 11
    PAGE_ALLOCATOR = 32
    SIZE_MAP_TABLE = 64
    EXTENSION = 128

    @classmethod
    def from_tag(cls, tag: int) -> PageKind:
        """Map a raw tag to a kind; tags the viewer does not know map to ``UNKNOWN``."""
        try:
            return cls(tag)
        except ValueError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        """Return the page kind name used in the legend and hover text."""
        return _PAGE_LABELS[self]


_PAGE_LABELS = {
    PageKind.UNKNOWN: "Unknown",
    PageKind.EMPTY: "Empty",
    PageKind.HEAP_SMALL: "HeapSmall",
    PageKind.HEAP_MEDIUM: "HeapMedium",
    PageKind.HEAP_LARGE: "HeapLarge",
    PageKind.UNMANAGED: "Unmanaged",
    PageKind.PAGE_DIRECTORY: "PageDirectory",
    PageKind.PAGE_ALLOCATOR: "RAT",
    PageKind.SIZE_MAP_TABLE: "SMT",
    PageKind.EXTENSION: "Extension",
}


@dataclass(frozen=True)
class RegionEntry:
    """One entry of the bootloader memory map."""

    base: int
    length: int
    tag: int

    @property
    def kind(self) -> RegionKind:
        """Return the region kind for the raw tag."""
        return RegionKind.from_tag(self.tag)

    @property
    def end(self) -> int:
        """Return the exclusive end address of the region."""
        return self.base + self.length


@dataclass(frozen=True)
class PageEntry:
    """A single page from the published RAT sample."""

    index: int
    address: int
    tag: int

    @property
    def kind(self) -> PageKind:
        return PageKind.from_tag(self.tag)


@dataclass(frozen=True)
class AllocatorState:
    """Page allocator counters plus the bounded prefix of the RAT.

    ``page_tags`` holds one raw page-kind byte per sampled page; the sample
    can be shorter than ``total_page_count``.
    """

    ram_start: int
    heap_end: int
    table_location: int
    ram_size: int
    total_page_count: int
    free_page_count: int
    page_tags: bytes = b""

    @property
    def used_page_count(self) -> int:
        """Return total minus free pages."""
        return self.total_page_count - self.free_page_count

    @property
    def pages(self) -> tuple[PageEntry, ...]:
        """Expand the page sample into entries with derived addresses."""
        return tuple(
            PageEntry(index=i, address=self.ram_start + i * PAGE_SIZE, tag=tag)
            for i, tag in enumerate(self.page_tags)
        )


@dataclass(frozen=True)
class MemorySnapshot:
    """Decoded view of one read of the debug buffer."""

    memory_map: tuple[RegionEntry, ...]
    allocator: AllocatorState
    captured_at: float
    version: int = 0
    guest_timestamp: int = 0


def _records(data: bytes, dtype: np.dtype, count: int, offset: int) -> np.ndarray:
    if count <= 0:
        return np.zeros(0, dtype=dtype)
    return np.frombuffer(data, dtype=dtype, count=count, offset=offset)


def decode(data: bytes, captured_at: float | None = None) -> MemorySnapshot:
    """Decode ``data`` into a :class:`MemorySnapshot`.

    Bytes past :data:`BUFFER_SIZE` are ignored.  Counts larger than the
    array capacity are clamped.

    Raises:
        TruncatedBuffer: ``data`` is shorter than :data:`BUFFER_SIZE`.
        BadMagic: the first eight bytes are not :data:`MAGIC_NUMBER`.
        InconsistentBuffer: more free pages than total pages.
    """
    if len(data) < BUFFER_SIZE:
        raise TruncatedBuffer(len(data), BUFFER_SIZE)
    data = bytes(data[:BUFFER_SIZE])

    header = np.frombuffer(data, dtype=HEADER_DTYPE, count=1)[0]
    magic = int(header["magic"])
    if magic != MAGIC_NUMBER:
        raise BadMagic(magic, MAGIC_NUMBER)

    map_count = min(int(header["memory_map_count"]), MAX_MEMORY_MAP_ENTRIES)
    regions = _records(data, REGION_DTYPE, map_count, MEMORY_MAP_OFFSET)
    memory_map = tuple(
        RegionEntry(base=int(base), length=int(length), tag=int(kind))
        for base, length, kind in regions.tolist()
    )

    alloc = np.frombuffer(data, dtype=ALLOCATOR_DTYPE, count=1, offset=ALLOCATOR_OFFSET)[0]
    total = int(alloc["total_page_count"])
    free = int(alloc["free_page_count"])
    if free > total:
        raise InconsistentBuffer(f"free page count {free} exceeds total {total}")

    sample_count = min(int(alloc["page_sample_count"]), MAX_PAGE_SAMPLE)
    allocator = AllocatorState(
        ram_start=int(alloc["ram_start"]),
        heap_end=int(alloc["heap_end"]),
        table_location=int(alloc["table_location"]),
        ram_size=int(alloc["ram_size"]),
        total_page_count=total,
        free_page_count=free,
        page_tags=data[PAGE_SAMPLE_OFFSET:PAGE_SAMPLE_OFFSET + sample_count],
    )
    return MemorySnapshot(
        memory_map=memory_map,
        allocator=allocator,
        captured_at=time.time() if captured_at is None else captured_at,
        version=int(header["version"]),
        guest_timestamp=int(header["timestamp"]),
    )


def encode(snapshot: MemorySnapshot, magic: int = MAGIC_NUMBER) -> bytes:
    """Serialise ``snapshot`` the way the guest kernel lays out the buffer."""
    if len(snapshot.memory_map) > MAX_MEMORY_MAP_ENTRIES:
        msg = f"memory map holds at most {MAX_MEMORY_MAP_ENTRIES} entries"
        raise ValueError(msg)
    alloc = snapshot.allocator
    if len(alloc.page_tags) > MAX_PAGE_SAMPLE:
        raise ValueError(f"page sample holds at most {MAX_PAGE_SAMPLE} entries")

    out = bytearray(BUFFER_SIZE)
    header = np.frombuffer(out, dtype=HEADER_DTYPE, count=1)
    header[0] = (magic, snapshot.version, snapshot.guest_timestamp, len(snapshot.memory_map))

    regions = _records(out, REGION_DTYPE, len(snapshot.memory_map), MEMORY_MAP_OFFSET)
    for slot, entry in enumerate(snapshot.memory_map):
        regions[slot] = (entry.base, entry.length, entry.tag)

    alloc_rec = np.frombuffer(out, dtype=ALLOCATOR_DTYPE, count=1, offset=ALLOCATOR_OFFSET)
    alloc_rec[0] = (
        alloc.ram_start,
        alloc.heap_end,
        alloc.table_location,
        alloc.ram_size,
        alloc.total_page_count,
        alloc.free_page_count,
        len(alloc.page_tags),
    )
    out[PAGE_SAMPLE_OFFSET:PAGE_SAMPLE_OFFSET + len(alloc.page_tags)] = alloc.page_tags
    return bytes(out)
