import os
import shutil
import tempfile
from collections.abc import Callable, Iterator

import pytest

from qemu_allocator_viewer.buffer import AllocatorState, MemorySnapshot, RegionEntry

SnapshotFactory = Callable[..., MemorySnapshot]


@pytest.fixture
def make_snapshot() -> SnapshotFactory:
    def factory(
        tags: bytes = bytes([0, 3, 5, 7] * 25),
        free: int = 1000,
        total: int = 4096,
        regions: tuple[RegionEntry, ...] | None = None,
        captured_at: float = 1.0,
    ) -> MemorySnapshot:
        if regions is None:
            regions = (
                RegionEntry(base=0x0, length=0x9F000, tag=0),
                RegionEntry(base=0x100000, length=0x7EE0000, tag=0),
                RegionEntry(base=0xFD000000, length=0x300000, tag=7),
            )
        return MemorySnapshot(
            memory_map=regions,
            allocator=AllocatorState(
                ram_start=0x200000,
                heap_end=0x800000,
                table_location=0x200000,
                ram_size=total * 4096,
                total_page_count=total,
                free_page_count=free,
                page_tags=tags,
            ),
            captured_at=captured_at,
            version=1,
            guest_timestamp=123456789,
        )

    return factory


@pytest.fixture
def sock_path() -> Iterator[str]:
    # AF_UNIX paths are limited to ~108 bytes, so avoid pytest's long tmp_path.
    directory = tempfile.mkdtemp(prefix="qmp")
    yield os.path.join(directory, "qmp.sock")
    shutil.rmtree(directory, ignore_errors=True)
