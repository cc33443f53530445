"""Decide between redrawing the whole panel and patching only what changed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Union

import numpy as np

from .buffer import AllocatorState, MemorySnapshot, PageKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Counters:
    """Allocator counters sent with every update."""

    ram_size: int
    total_page_count: int
    free_page_count: int
    used_page_count: int

    @classmethod
    def from_allocator(cls, allocator: AllocatorState) -> Counters:
        """Copy the scalar counters out of ``allocator``."""
        return cls(
            ram_size=allocator.ram_size,
            total_page_count=allocator.total_page_count,
            free_page_count=allocator.free_page_count,
            used_page_count=allocator.used_page_count,
        )


@dataclass(frozen=True)
class PageChange:
    index: int
    tag: int

    @property
    def kind(self) -> PageKind:
        return PageKind.from_tag(self.tag)


@dataclass(frozen=True)
class FullRender:
    snapshot: MemorySnapshot


@dataclass(frozen=True)
class Patch:
    """Incremental update: new counters plus the pages whose kind changed."""

    counters: Counters
    changed_pages: tuple[PageChange, ...]
    captured_at: float


Update = Union[FullRender, Patch]


class DisplaySink(Protocol):
    """Where published updates go."""

    def render_full(self, snapshot: MemorySnapshot) -> None:
        """Redraw everything from ``snapshot``."""

    def apply_patch(self, patch: Patch) -> None:
        """Update counters and repaint only the listed pages."""

    def set_live(self, live: bool) -> None:
        """Show whether polling is running."""

    def show_error(self, message: str) -> None:
        """Report a session-fatal error once."""


# Page kind for every possible tag byte; unknown tags all collapse to UNKNOWN.
_KIND_BY_TAG = np.array([int(PageKind.from_tag(tag)) for tag in range(256)], dtype=np.int16)


def diff_pages(previous: bytes, current: bytes) -> tuple[PageChange, ...]:
    """Return the indices whose page kind differs; both samples must be equally long."""
    old = _KIND_BY_TAG[np.frombuffer(previous, dtype=np.uint8)]
    new_tags = np.frombuffer(current, dtype=np.uint8)
    new = _KIND_BY_TAG[new_tags]
    changed = np.flatnonzero(old != new)
    return tuple(PageChange(index=int(i), tag=int(new_tags[i])) for i in changed)


class UpdatePublisher:
    """Sends each snapshot to ``sink`` as a full render or an incremental patch.

    A full render is only needed for the first snapshot of a display session
    or when the sample length changes; everything else is a patch so the
    panel is not rebuilt every tick.
    """

    def __init__(self, sink: DisplaySink) -> None:
        self.sink = sink
        self._last: MemorySnapshot | None = None

    @property
    def last_snapshot(self) -> MemorySnapshot | None:
        """Return the most recently published snapshot."""
        return self._last

    def reset(self) -> None:
        """Forget the baseline so the next publish is a full render."""
        self._last = None

    def build_update(self, snapshot: MemorySnapshot) -> Update:
        """Compare ``snapshot`` with the baseline without publishing it."""
        previous = self._last
        if previous is None:
            return FullRender(snapshot)
        old_tags = previous.allocator.page_tags
        new_tags = snapshot.allocator.page_tags
        if len(old_tags) != len(new_tags):
            logger.debug(
                "Page sample length changed %d -> %d, full render",
                len(old_tags),
                len(new_tags),
            )
            return FullRender(snapshot)
        return Patch(
            counters=Counters.from_allocator(snapshot.allocator),
            changed_pages=diff_pages(old_tags, new_tags),
            captured_at=snapshot.captured_at,
        )

    def publish(self, snapshot: MemorySnapshot) -> Update:
        """Send ``snapshot`` to the sink and make it the new baseline."""
        update = self.build_update(snapshot)
        if isinstance(update, FullRender):
            self.sink.render_full(snapshot)
        else:
            self.sink.apply_patch(update)
        self._last = snapshot
        return update
