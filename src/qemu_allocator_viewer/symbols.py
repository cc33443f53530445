"""Locate the kernel's debug buffer in its symbol table with ``nm``."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence

from .config import DEFAULT_SYMBOLS
from .errors import ResolutionError

logger = logging.getLogger(__name__)

NM_LINE = re.compile(r"^(?P<addr>[0-9A-Fa-f]+)\s+(?P<type>[A-Za-z?])\s+(?P<name>\S+)")


def parse_nm_output(text: str) -> dict[str, int]:
    """Map symbol names to addresses from ``nm`` output, skipping undefined symbols."""
    symbols: dict[str, int] = {}
    for line in text.splitlines():
        match = NM_LINE.match(line.strip())
        if match:
            symbols.setdefault(match.group("name"), int(match.group("addr"), 16))
    return symbols


class SymbolResolver:
    """Resolves the debug buffer address once per debugging session."""

    def __init__(self, candidates: Sequence[str] = DEFAULT_SYMBOLS, nm: str = "nm") -> None:
        self.candidates = tuple(candidates)
        self.nm = nm
        self._cached: int | None = None

    @property
    def cached(self) -> int | None:
        """Return the resolved address, if any."""
        return self._cached

    def clear(self) -> None:
        """Forget the cached address; the next guest run may place it elsewhere."""
        self._cached = None

    def _run_nm(self, symbol_table: str) -> str:
        try:
            result = subprocess.run(
                [self.nm, symbol_table],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ResolutionError(f"Could not run {self.nm}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            raise ResolutionError(f"{self.nm} failed on {symbol_table}: {detail}")
        return result.stdout or ""

    def resolve(self, symbol_table: str) -> int:
        """Return the debug buffer address from ``symbol_table``.

        Raises:
            ResolutionError: ``nm`` could not run or none of the candidate
                names is defined.
        """
        if self._cached is not None:
            return self._cached
        symbols = parse_nm_output(self._run_nm(symbol_table))
        for name in self.candidates:
            if name in symbols:
                self._cached = symbols[name]
                logger.info("Debug buffer %s at 0x%X", name, self._cached)
                return self._cached
        names = ", ".join(self.candidates)
        raise ResolutionError(f"None of [{names}] found in {symbol_table}")
