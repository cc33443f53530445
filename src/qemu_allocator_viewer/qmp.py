"""QMP transport: reads guest memory through QEMU's monitor without pausing it."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
from typing import Any, cast

from .config import HANDSHAKE_TIMEOUT, READ_CHUNK, REQUEST_TIMEOUT
from .errors import NotReady, TransportError

logger = logging.getLogger(__name__)

# "0xde" but not the "0x10" prefix of an address such as "0x1000".
HEX_BYTE = re.compile(r"0x([0-9a-fA-F]{2})(?![0-9a-fA-F])")


def _extract_hex_bytes(text: str, limit: int | None = None) -> list[int]:
    """Return the ``0xHH`` byte values found in ``text``, in order."""
    vals: list[int] = []
    for match in HEX_BYTE.finditer(text):
        vals.append(int(match.group(1), 16))
        if limit is not None and len(vals) >= limit:
            break
    return vals


def parse_hex_dump(text: str, size: int) -> bytes:
    """Turn the monitor's ``x /Nbx`` reply into exactly ``size`` bytes.

    The textual format is not a strict contract, so a short or long reply is
    logged and padded with zeros or truncated instead of failing.
    """
    vals = _extract_hex_bytes(text)
    if len(vals) != size:
        logger.warning("Expected %d bytes from hex dump but got %d", size, len(vals))
    if len(vals) < size:
        vals.extend([0] * (size - len(vals)))
    return bytes(vals[:size])


class QMPTransport:
    """Speaks the subset of QMP the viewer needs over a UNIX socket.

    Requests carry an increasing id and wait on a future stored in a pending
    table; a dispatch task reads replies and completes the matching entry.
    The table is rebuilt on every :meth:`connect`.
    """

    requires_address = True

    def __init__(
        self,
        path: str,
        *,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        chunk_size: int = READ_CHUNK,
    ) -> None:
        self.path = path
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.chunk_size = max(1, int(chunk_size))
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)
        self._connected = False

    def is_connected(self) -> bool:
        """Return ``True`` while the handshake has completed and the socket is open."""
        return self._connected

    async def connect(self) -> None:
        """Open the socket, wait for the greeting and negotiate capabilities."""
        self.disconnect()
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(self.path), self.handshake_timeout
            )
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise NotReady(f"QMP socket {self.path} is not accepting connections") from exc
        except (OSError, TimeoutError) as exc:
            raise TransportError(f"Could not connect to QMP socket {self.path}: {exc}") from exc

        self._pending = {}
        self._ids = itertools.count(1)
        try:
            await asyncio.wait_for(self._handshake(), self.handshake_timeout)
        except TimeoutError as exc:
            self.disconnect()
            raise TransportError("QMP connection timeout") from exc
        except (OSError, TransportError):
            self.disconnect()
            raise
        logger.info("Connected to QEMU at %s", self.path)

    async def _handshake(self) -> None:
        while True:
            greeting = await self._read_message()
            if "QMP" in greeting:
                logger.debug("Received QMP greeting: %s", greeting["QMP"])
                break
        # Set before the dispatcher can observe EOF and clear it.
        self._connected = True
        self._dispatcher = asyncio.create_task(self._dispatch(), name="qmp-dispatch")
        await self.execute("qmp_capabilities")

    async def _read_message(self) -> dict[str, Any]:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                raise TransportError("QMP socket closed")
            if not line.strip():
                continue
            try:
                return cast("dict[str, Any]", json.loads(line.decode("utf-8")))
            except ValueError:
                logger.warning("Failed to parse QMP message: %r", line)

    async def _dispatch(self) -> None:
        pending = self._pending
        try:
            while True:
                try:
                    resp = await self._read_message()
                except TransportError:
                    break
                self._complete(pending, resp)
        except OSError as exc:
            logger.warning("QMP socket error: %s", exc)
        finally:
            self._connected = False
            for future in pending.values():
                if not future.done():
                    future.set_exception(TransportError("QMP socket closed"))
            pending.clear()
            logger.info("QMP connection closed")

    @staticmethod
    def _complete(pending: dict[int, asyncio.Future[Any]], resp: dict[str, Any]) -> None:
        if "event" in resp:
            logger.debug("QMP event: %s", resp["event"])
            return
        future = pending.pop(resp.get("id"), None)  # type: ignore[arg-type]
        if future is None:
            logger.debug("Ignoring QMP reply with no pending request: %s", resp)
            return
        if future.done():
            return
        if "return" in resp:
            future.set_result(resp["return"])
        elif "error" in resp:
            desc = resp["error"].get("desc", "QMP error")
            future.set_exception(TransportError(desc))
        else:
            future.set_exception(TransportError(f"Malformed QMP reply: {resp}"))

    def _send_json(self, obj: dict[str, object]) -> None:
        if self._writer is None:
            msg = "QMP socket has not been connected"
            raise TransportError(msg)
        data = (json.dumps(obj) + "\r\n").encode("utf-8")
        self._writer.write(data)

    async def execute(self, command: str, arguments: dict[str, object] | None = None) -> Any:
        """Send ``command`` and wait for its reply, at most ``request_timeout`` seconds."""
        pending = self._pending
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        pending[request_id] = future
        request: dict[str, object] = {"execute": command, "id": request_id}
        if arguments:
            request["arguments"] = arguments
        try:
            self._send_json(request)
            return await asyncio.wait_for(future, self.request_timeout)
        except TimeoutError as exc:
            raise TransportError(f"QMP command timeout: {command}") from exc
        finally:
            pending.pop(request_id, None)

    async def hmp(self, cmd: str) -> str:
        """Execute a human-monitor command and return its textual result."""
        result = await self.execute("human-monitor-command", {"command-line": cmd})
        return str(result)

    async def read(self, size: int, address: int | None = None) -> bytes:
        """Read ``size`` bytes of guest virtual memory at ``address``."""
        if address is None:
            raise TransportError("QMP reads need a guest address")
        if not self._connected:
            raise TransportError("QMP socket has not been connected")
        count = max(0, int(size))
        buf = bytearray()
        offset = 0
        while offset < count:
            step = min(self.chunk_size, count - offset)
            txt = await self.hmp(f"x /{step}bx 0x{address + offset:x}")
            buf += parse_hex_dump(txt, step)
            offset += step
        return bytes(buf)

    def disconnect(self) -> None:
        """Close the socket; pending requests are failed by the dispatch task."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            self._dispatcher = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self._reader = None
        self._connected = False
