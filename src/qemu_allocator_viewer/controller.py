"""Polling controller: ties buffer reads to the lifetime of a debugging session."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable

from .buffer import BUFFER_SIZE, decode
from .config import POLL_INTERVAL
from .errors import BadMagic, DecodeError, NotReady, ResolutionError, TransportError
from .publisher import UpdatePublisher
from .symbols import SymbolResolver
from .transport import GuestSession, Transport, open_transport

logger = logging.getLogger(__name__)

SessionProvider = Callable[[], GuestSession | None]
TransportFactory = Callable[[GuestSession], Transport]


class PollState(enum.Enum):
    IDLE = "idle"
    LIVE = "live"
    STOPPED = "stopped"


class PollingController:
    """Reads the debug buffer every ``interval`` seconds while a session is active.

    Reads never overlap: a tick that fires while the previous read is still
    waiting is skipped.  Per-tick failures are logged and retried on the
    next tick; only a failed symbol lookup ends polling for the session.
    """

    def __init__(
        self,
        session_provider: SessionProvider,
        publisher: UpdatePublisher,
        *,
        resolver: SymbolResolver | None = None,
        transport_factory: TransportFactory = open_transport,
        interval: float = POLL_INTERVAL,
        on_error: Callable[[str], None] | None = None,
        on_live: Callable[[bool], None] | None = None,
    ) -> None:
        self._session_provider = session_provider
        self._publisher = publisher
        self._resolver = resolver or SymbolResolver()
        self._transport_factory = transport_factory
        self.interval = interval
        self._on_error = on_error
        self._on_live = on_live

        self._state = PollState.IDLE
        self._timer: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self._transport: Transport | None = None
        self._address: int | None = None
        self._generation = 0
        self._disposed = False
        self.skipped_ticks = 0

    @property
    def state(self) -> PollState:
        """Return the current polling state."""
        return self._state

    @property
    def is_live(self) -> bool:
        """Return ``True`` while the controller is polling."""
        return self._state is PollState.LIVE

    @property
    def transport(self) -> Transport | None:
        """Return the transport opened for the current session, if any."""
        return self._transport

    def _set_state(self, state: PollState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_live is not None:
            self._on_live(state is PollState.LIVE)

    async def start(self) -> None:
        """Go live: read once now, then every ``interval`` seconds.

        Raises:
            ResolutionError: the debug buffer address could not be resolved.
        """
        if self._disposed:
            raise RuntimeError("controller has been disposed")
        self._cancel_timer()
        logger.info("Starting memory polling every %.1fs", self.interval)
        self._set_state(PollState.LIVE)
        # The immediate read shares the single-flight slot with tick reads.
        while self._inflight is not None and not self._inflight.done():
            try:
                await asyncio.shield(self._inflight)
            except ResolutionError:
                # Raised to, and reported by, the start() that issued that read.
                break
        if self._state is not PollState.LIVE:
            return
        self._inflight = asyncio.create_task(self._poll_once(raise_resolution=True))
        await self._inflight
        if self._state is PollState.LIVE and self._timer is None:
            self._timer = asyncio.create_task(self._tick_loop(), name="memory-poll")

    def stop(self) -> None:
        """Stop polling and drop everything tied to the current guest run."""
        self._cancel_timer()
        self._generation += 1
        if self._transport is not None:
            self._transport.disconnect()
            self._transport = None
        self._address = None
        self._resolver.clear()
        self._set_state(PollState.STOPPED)

    def dispose(self) -> None:
        """Stop for good and forget the published baseline."""
        self.stop()
        self._publisher.reset()
        self._disposed = True

    async def session_started(self) -> None:
        """Resume polling when a new debugging session begins."""
        if self._disposed or self.is_live:
            return
        try:
            await self.start()
        except ResolutionError:
            # Already logged and reported through on_error.
            pass

    def session_ended(self) -> None:
        """Stop polling because the debugging session ended."""
        self.stop()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._inflight is not None and not self._inflight.done():
                self.skipped_ticks += 1
                logger.debug("Previous read still in flight, skipping tick")
                continue
            self._inflight = asyncio.create_task(self._poll_once())

    async def _ensure_transport(self, session: GuestSession) -> tuple[Transport, int | None]:
        if self._transport is None:
            self._transport = self._transport_factory(session)
        transport = self._transport
        if transport.requires_address and self._address is None:
            if not session.kernel:
                raise ResolutionError("debug session has no kernel symbol table")
            self._address = self._resolver.resolve(session.kernel)
        if not transport.is_connected():
            await transport.connect()
        return transport, self._address

    async def _poll_once(self, raise_resolution: bool = False) -> None:
        session = self._session_provider()
        if session is None:
            logger.debug("No active debug session, stopping")
            self.stop()
            return

        generation = self._generation
        try:
            transport, address = await self._ensure_transport(session)
            data = await transport.read(BUFFER_SIZE, address)
            snapshot = decode(data)
        except ResolutionError as exc:
            logger.error("Memory viewer cannot locate the debug buffer: %s", exc)
            self.stop()
            if self._on_error is not None:
                self._on_error(str(exc))
            if raise_resolution:
                raise
            return
        except (BadMagic, NotReady) as exc:
            logger.debug("Guest not ready: %s", exc)
            return
        except (DecodeError, TransportError) as exc:
            logger.warning("Failed to read memory: %s", exc)
            return

        if generation != self._generation:
            logger.debug("Discarding read that finished after stop")
            return
        self._publisher.publish(snapshot)
