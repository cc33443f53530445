"""Live view of a guest kernel's page allocator, read while the guest runs."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import sys
from collections.abc import Callable

from .config import ViewerConfig, build_parser
from .controller import PollingController, SessionProvider
from .display import LogDisplay, MatplotlibDisplay
from .errors import ResolutionError
from .publisher import DisplaySink, UpdatePublisher
from .symbols import SymbolResolver
from .transport import GuestSession, open_transport

logger = logging.getLogger(__name__)

WATCH_INTERVAL = 0.05  # seconds between GUI event pumps / session checks


def cli_session(config: ViewerConfig) -> SessionProvider:
    """Return a provider reporting the guest described on the command line.

    With QMP the session lasts as long as QEMU's socket exists; a
    shared-memory file that is missing only means the guest is not ready.
    """
    session = GuestSession(
        qmp_socket=config.qmp_socket,
        shm_path=config.shm_path,
        kernel=config.kernel,
    )

    def provider() -> GuestSession | None:
        if config.qmp_socket and not os.path.exists(config.qmp_socket):
            return None
        return session

    return provider


def build_controller(
    config: ViewerConfig, sink: DisplaySink, provider: SessionProvider,
) -> PollingController:
    """Wire the resolver, transport factory and sink callbacks for one viewer."""
    return PollingController(
        provider,
        UpdatePublisher(sink),
        resolver=SymbolResolver(config.symbols, nm=config.nm),
        transport_factory=functools.partial(open_transport, config=config),
        interval=config.interval,
        on_error=sink.show_error,
        on_live=sink.set_live,
    )


async def run(
    config: ViewerConfig,
    sink: DisplaySink,
    *,
    is_open: Callable[[], bool] = lambda: True,
    pump: Callable[[], None] | None = None,
) -> int:
    """Poll until ``is_open`` turns false, following session start and end."""
    provider = cli_session(config)
    controller = build_controller(config, sink, provider)
    try:
        try:
            await controller.start()
        except ResolutionError:
            if config.headless:
                return 1
        active = provider() is not None
        while is_open():
            await asyncio.sleep(WATCH_INTERVAL)
            if pump is not None:
                pump()
            now_active = provider() is not None
            if now_active and not active:
                logger.info("Guest session started")
                await controller.session_started()
            elif active and not now_active:
                logger.info("Guest session ended")
                controller.session_ended()
            active = now_active
    finally:
        controller.dispose()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Parse the command line and run the viewer."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = ViewerConfig.from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if config.headless:
        sink: DisplaySink = LogDisplay()
        is_open: Callable[[], bool] = lambda: True
        pump = None
    else:
        import matplotlib.pyplot as plt

        plt.ion()
        display = MatplotlibDisplay()
        plt.show(block=False)
        sink, is_open, pump = display, display.is_open, display.pump

    try:
        status = asyncio.run(run(config, sink, is_open=is_open, pump=pump))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        status = 0
    sys.exit(status)


if __name__ == "__main__":
    main()
