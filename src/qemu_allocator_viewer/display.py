"""Matplotlib panel and headless sink for published memory updates."""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Any, TypeAlias

import numpy as np

from .buffer import PAGE_SIZE, AllocatorState, MemorySnapshot, PageEntry, PageKind, RegionKind
from .publisher import Counters, Patch

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from matplotlib.backend_bases import MouseEvent
    from matplotlib.figure import Figure
    from numpy import ndarray as NDArray
else:
    NDArray: TypeAlias = Any
    Figure: TypeAlias = Any
    MouseEvent: TypeAlias = Any

PAGE_GRID_COLS = 50  # 1000 sampled pages -> 50x20 cells
CELL_PIXELS = 8
BACKGROUND_RGB = (30, 30, 30)
LOADING_TEXT = "Reading memory debug buffer..."
HOVER_HINT = "Hover over a page to see details"

PAGE_KIND_COLORS = {
    PageKind.EMPTY: "#2ecc71",  # free
    PageKind.HEAP_SMALL: "#3498db",
    PageKind.HEAP_MEDIUM: "#9b59b6",
    PageKind.HEAP_LARGE: "#e74c3c",
    PageKind.UNMANAGED: "#f39c12",
    PageKind.PAGE_DIRECTORY: "#1abc9c",
    PageKind.PAGE_ALLOCATOR: "#7f8c8d",
    PageKind.SIZE_MAP_TABLE: "#e67e22",
    PageKind.EXTENSION: "#95a5a6",
    PageKind.UNKNOWN: "#bdc3c7",
}

REGION_KIND_COLORS = {
    RegionKind.USABLE: "#2ecc71",
    RegionKind.RESERVED: "#7f8c8d",
    RegionKind.ACPI_RECLAIMABLE: "#1abc9c",
    RegionKind.ACPI_NVS: "#16a085",
    RegionKind.BAD_MEMORY: "#c0392b",
    RegionKind.BOOTLOADER_RECLAIMABLE: "#f39c12",
    RegionKind.KERNEL_AND_MODULES: "#e74c3c",
    RegionKind.FRAMEBUFFER: "#9b59b6",
    RegionKind.UNKNOWN: "#bdc3c7",
}


def format_bytes(value: int) -> str:
    """Format a byte count with a binary B/KB/MB/GB suffix."""
    if value >= 1024**3:
        return f"{value / 1024**3:.1f} GB"
    if value >= 1024**2:
        return f"{value / 1024**2:.1f} MB"
    if value >= 1024:
        return f"{value / 1024:.1f} KB"
    return f"{value} B"


@functools.lru_cache(maxsize=256)
def page_rgb(tag: int) -> tuple[int, int, int]:
    """Return the RGB colour for a raw page tag."""
    from PIL import ImageColor

    return ImageColor.getrgb(PAGE_KIND_COLORS[PageKind.from_tag(tag)])[:3]


def count_page_kinds(tags: bytes | bytearray) -> dict[PageKind, int]:
    """Count sampled pages per kind."""
    values, counts = np.unique(np.frombuffer(bytes(tags), dtype=np.uint8), return_counts=True)
    totals: dict[PageKind, int] = {}
    for tag, count in zip(values.tolist(), counts.tolist()):
        kind = PageKind.from_tag(tag)
        totals[kind] = totals.get(kind, 0) + count
    return totals


def format_counters(counters: Counters, page_counts: dict[PageKind, int]) -> str:
    """Render the allocator counters panel text."""
    total = counters.total_page_count
    used_percent = (counters.used_page_count / total * 100.0) if total else 0.0
    lines = [
        f"RAM size:    {format_bytes(counters.ram_size)}",
        f"Total pages: {total}",
        f"Free pages:  {counters.free_page_count}",
        f"Used pages:  {counters.used_page_count} ({used_percent:.1f}%)",
        "",
        "Sampled pages by type:",
    ]
    for kind in sorted(page_counts, key=int):
        lines.append(f"  {kind.label:<14}{page_counts[kind]:>5}")
    return "\n".join(lines)


def render_page_grid(
    tags: bytes | bytearray, cols: int = PAGE_GRID_COLS, cell: int = CELL_PIXELS,
) -> NDArray:
    """Draw one coloured cell per sampled page into an RGB array."""
    try:
        from PIL import Image, ImageDraw
    except ModuleNotFoundError as exc:  # pragma: no cover
        raise RuntimeError("Rendering the page grid requires Pillow") from exc

    rows = max(1, -(-len(tags) // cols))
    img = Image.new("RGB", (cols * cell, rows * cell), color=BACKGROUND_RGB)
    draw = ImageDraw.Draw(img)
    for index, tag in enumerate(tags):
        y, x = divmod(index, cols)
        draw.rectangle(
            [x * cell, y * cell, x * cell + cell - 2, y * cell + cell - 2],
            fill=page_rgb(tag),
        )
    return np.array(img, dtype=np.uint8)


def paint_page(
    grid: NDArray, index: int, tag: int, cols: int = PAGE_GRID_COLS, cell: int = CELL_PIXELS,
) -> None:
    """Repaint a single cell of a grid produced by :func:`render_page_grid`."""
    y, x = divmod(index, cols)
    grid[y * cell : y * cell + cell - 1, x * cell : x * cell + cell - 1] = page_rgb(tag)


def page_at(
    xdata: float, ydata: float, count: int, cols: int = PAGE_GRID_COLS, cell: int = CELL_PIXELS,
) -> int | None:
    """Map image coordinates from ``imshow`` to a sampled page index, if any."""
    # imshow centres pixel n on n, so pixel edges sit at half-integers.
    col = int((xdata + 0.5) // cell)
    row = int((ydata + 0.5) // cell)
    if not 0 <= col < cols or row < 0:
        return None
    index = row * cols + col
    return index if index < count else None


def format_page_details(page: PageEntry) -> str:
    """Describe a hovered page: index, derived address, kind and size."""
    return (
        f"Page #{page.index}\n"
        f"Address: 0x{page.address:X}\n"
        f"Type:    {page.kind.label}\n"
        f"Size:    {format_bytes(PAGE_SIZE)}"
    )


class MatplotlibDisplay:
    """Memory regions table, RAT page grid and counters in one figure.

    A full render rebuilds every artist.  Patches only touch the changed
    cells of the existing image and the counters text, which keeps the
    figure from flickering once per tick.
    """

    def __init__(self, figure: Figure | None = None) -> None:
        try:
            import matplotlib.pyplot as plt
        except ModuleNotFoundError as exc:  # pragma: no cover - viewer path only
            raise RuntimeError("Matplotlib is required to run the viewer") from exc

        self.fig = figure if figure is not None else plt.figure(figsize=(14, 7))
        gs = self.fig.add_gridspec(nrows=1, ncols=3, width_ratios=[2.2, 3, 1.4])
        self.ax_map = self.fig.add_subplot(gs[0, 0])
        self.ax_pages = self.fig.add_subplot(gs[0, 1])
        self.ax_info = self.fig.add_subplot(gs[0, 2])
        for ax in (self.ax_map, self.ax_pages, self.ax_info):
            ax.set_axis_off()
        self._status: Any = self.ax_pages.text(
            0.5, 0.5, LOADING_TEXT, ha="center", va="center", transform=self.ax_pages.transAxes,
        )
        self._grid: NDArray | None = None
        self._tags = bytearray()
        self._im: Any = None
        self._alloc: AllocatorState | None = None
        self._counters_text: Any = None
        self._hover_text: Any = None
        self._live = False
        self._cid_move = self.fig.canvas.mpl_connect("motion_notify_event", self.on_move)
        self._refresh_title()

    @property
    def rendered(self) -> bool:
        return self._grid is not None

    @property
    def grid(self) -> NDArray | None:
        return self._grid

    def _refresh_title(self) -> None:
        state = "LIVE" if self._live else "STOPPED"
        self.fig.suptitle(f"Memory Regions [{state}]")

    def _draw(self) -> None:
        self.fig.canvas.draw_idle()

    def _draw_memory_map(self, snapshot: MemorySnapshot) -> None:
        from matplotlib import colors as mcolors

        ax = self.ax_map
        ax.set_title("Limine memory map")
        if not snapshot.memory_map:
            ax.text(0.5, 0.5, "No memory map entries", ha="center", va="center")
            return
        rows = []
        colours = []
        for entry in snapshot.memory_map:
            kind = entry.kind
            rows.append([f"0x{entry.base:X}", format_bytes(entry.length), kind.label])
            rgba = mcolors.to_rgba(REGION_KIND_COLORS[kind], alpha=0.35)
            colours.append(["white", "white", rgba])
        table = ax.table(
            cellText=rows,
            cellColours=colours,
            colLabels=["Base", "Length", "Type"],
            loc="upper center",
        )
        table.auto_set_font_size(False)
        table.set_fontsize(8)

    def render_full(self, snapshot: MemorySnapshot) -> None:
        """Rebuild the table, page grid and counters from ``snapshot``."""
        from matplotlib import patches

        for ax in (self.ax_map, self.ax_pages, self.ax_info):
            ax.cla()
            ax.set_axis_off()
        self._status = None
        self._draw_memory_map(snapshot)

        alloc = snapshot.allocator
        self._alloc = alloc
        self._tags = bytearray(alloc.page_tags)
        self._grid = render_page_grid(self._tags)
        self._im = self.ax_pages.imshow(self._grid, interpolation="nearest", origin="upper")
        self.ax_pages.set_title(
            f"RAT sample: {len(alloc.page_tags)} of {alloc.total_page_count} pages "
            f"from 0x{alloc.ram_start:X}",
            fontsize=9,
        )
        page_counts = count_page_kinds(self._tags)
        handles = [
            patches.Patch(facecolor=PAGE_KIND_COLORS[kind], label=kind.label)
            for kind in sorted(page_counts, key=int)
        ]
        if handles:
            self.ax_pages.legend(handles=handles, loc="upper left", bbox_to_anchor=(0, -0.02),
                                 ncol=5, fontsize=7, framealpha=0.65)

        self.ax_info.set_title("Page allocator")
        self._counters_text = self.ax_info.text(
            0.0, 1.0, format_counters(Counters.from_allocator(alloc), page_counts),
            family="monospace", fontsize=8, va="top", transform=self.ax_info.transAxes,
        )
        self.ax_info.text(
            0.0, 0.0,
            f"RAM start: 0x{alloc.ram_start:X}\n"
            f"Heap end:  0x{alloc.heap_end:X}\n"
            f"RAT at:    0x{alloc.table_location:X}",
            family="monospace", fontsize=8, va="bottom", transform=self.ax_info.transAxes,
        )
        self._hover_text = self.ax_info.text(
            0.0, 0.3, HOVER_HINT,
            family="monospace", fontsize=8, va="top", transform=self.ax_info.transAxes,
        )
        self._refresh_title()
        self._draw()

    def apply_patch(self, patch: Patch) -> None:
        """Repaint the changed cells and refresh the counters text."""
        if self._grid is None or self._counters_text is None:
            logger.debug("Patch received before the first full render, ignoring")
            return
        for change in patch.changed_pages:
            self._tags[change.index] = change.tag
            paint_page(self._grid, change.index, change.tag)
        if patch.changed_pages:
            self._im.set_data(self._grid)
        self._counters_text.set_text(
            format_counters(patch.counters, count_page_kinds(self._tags))
        )
        self._draw()

    def on_move(self, event: MouseEvent) -> None:
        """Show the details of the sampled page under the cursor."""
        if self._hover_text is None or self._alloc is None:
            return
        index = None
        if event.inaxes is self.ax_pages and event.xdata is not None and event.ydata is not None:
            index = page_at(event.xdata, event.ydata, len(self._tags))
        if index is None:
            text = HOVER_HINT
        else:
            page = PageEntry(
                index=index,
                address=self._alloc.ram_start + index * PAGE_SIZE,
                tag=self._tags[index],
            )
            text = format_page_details(page)
        if text != self._hover_text.get_text():
            self._hover_text.set_text(text)
            self._draw()

    def set_live(self, live: bool) -> None:
        """Show LIVE or STOPPED in the figure title."""
        self._live = live
        self._refresh_title()
        self._draw()

    def show_error(self, message: str) -> None:
        """Show ``message`` in red over the page grid."""
        if self._status is None:  # cleared by a full render
            self._status = self.ax_pages.text(
                0.5, 0.5, "", ha="center", va="center", transform=self.ax_pages.transAxes,
            )
        self._status.set_text(message)
        self._status.set_color("red")
        self._draw()

    def is_open(self) -> bool:
        """Return ``True`` until the figure window is closed."""
        import matplotlib.pyplot as plt

        return plt.fignum_exists(self.fig.number)

    def pump(self) -> None:
        """Let the GUI backend process pending events."""
        self.fig.canvas.flush_events()

    def close(self) -> None:
        """Close the figure."""
        import matplotlib.pyplot as plt

        plt.close(self.fig)


class LogDisplay:
    """Headless sink that writes each update to the log."""

    def __init__(self) -> None:
        self.updates = 0

    def render_full(self, snapshot: MemorySnapshot) -> None:
        """Log the memory map and the allocator summary."""
        self.updates += 1
        alloc = snapshot.allocator
        for entry in snapshot.memory_map:
            logger.info(
                "  0x%016X %10s %s", entry.base, format_bytes(entry.length), entry.kind.label
            )
        logger.info(
            "Full render: %d regions, %d sampled pages, %d/%d pages used, RAM %s",
            len(snapshot.memory_map),
            len(alloc.page_tags),
            alloc.used_page_count,
            alloc.total_page_count,
            format_bytes(alloc.ram_size),
        )

    def apply_patch(self, patch: Patch) -> None:
        """Log the new counters and how many pages changed."""
        self.updates += 1
        c = patch.counters
        logger.info(
            "Update: %d/%d pages used (%d free), %d sampled pages changed",
            c.used_page_count,
            c.total_page_count,
            c.free_page_count,
            len(patch.changed_pages),
        )

    def set_live(self, live: bool) -> None:
        """Log polling state changes."""
        logger.info("Memory polling %s", "live" if live else "stopped")

    def show_error(self, message: str) -> None:
        """Log ``message`` as an error."""
        logger.error("%s", message)
