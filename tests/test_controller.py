# pyright: reportPrivateUsage=false

import asyncio

import pytest

from qemu_allocator_viewer.buffer import BUFFER_SIZE, MemorySnapshot, encode
from qemu_allocator_viewer.controller import PollingController, PollState
from qemu_allocator_viewer.errors import NotReady, ResolutionError, TransportError
from qemu_allocator_viewer.publisher import Patch, UpdatePublisher
from qemu_allocator_viewer.transport import GuestSession

SESSION = GuestSession(qmp_socket="/tmp/qmp.sock", kernel="kernel.elf")


class FakeTransport:
    def __init__(self, results: list[object], requires_address: bool = False, delay: float = 0.0) -> None:
        self.results = results
        self.requires_address = requires_address
        self.delay = delay
        self.connected = False
        self.connects = 0
        self.disconnects = 0
        self.reads: list[tuple[int, int | None]] = []
        self.active = 0
        self.max_active = 0

    async def connect(self) -> None:
        self.connects += 1
        self.connected = True

    async def read(self, size: int, address: int | None = None) -> bytes:
        self.reads.append((size, address))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
            if isinstance(result, Exception):
                raise result
            assert isinstance(result, bytes)
            return result
        finally:
            self.active -= 1

    def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected


class FakeResolver:
    def __init__(self, address: int | None = 0xFFFF800000100000) -> None:
        self.address = address
        self.calls = 0
        self.clears = 0

    def resolve(self, symbol_table: str) -> int:
        self.calls += 1
        if self.address is None:
            raise ResolutionError(f"no debug buffer in {symbol_table}")
        return self.address

    def clear(self) -> None:
        self.clears += 1


class RecordingSink:
    def __init__(self) -> None:
        self.full: list[MemorySnapshot] = []
        self.patches: list[Patch] = []

    def render_full(self, snapshot: MemorySnapshot) -> None:
        self.full.append(snapshot)

    def apply_patch(self, patch: Patch) -> None:
        self.patches.append(patch)

    def set_live(self, live: bool) -> None:  # pragma: no cover - trivial
        pass

    def show_error(self, message: str) -> None:  # pragma: no cover - trivial
        pass


def make_controller(
    transport: FakeTransport,
    *,
    session: list[GuestSession | None] | None = None,
    resolver: FakeResolver | None = None,
    interval: float = 0.02,
    errors: list[str] | None = None,
    live: list[bool] | None = None,
) -> tuple[PollingController, RecordingSink, list[GuestSession]]:
    current = session if session is not None else [SESSION]
    sink = RecordingSink()
    opened: list[GuestSession] = []

    def factory(s: GuestSession) -> FakeTransport:
        opened.append(s)
        return transport

    controller = PollingController(
        lambda: current[0],
        UpdatePublisher(sink),
        resolver=resolver or FakeResolver(),  # type: ignore[arg-type]
        transport_factory=factory,  # type: ignore[arg-type]
        interval=interval,
        on_error=errors.append if errors is not None else None,
        on_live=live.append if live is not None else None,
    )
    return controller, sink, opened


def test_start_reads_immediately_and_renders(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], requires_address=True)
        controller, sink, opened = make_controller(transport, interval=10)

        await controller.start()

        assert controller.state is PollState.LIVE
        assert len(sink.full) == 1
        assert transport.reads == [(BUFFER_SIZE, 0xFFFF800000100000)]
        assert opened == [SESSION]
        controller.stop()

    asyncio.run(run())


def test_ticks_publish_patches(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())])
        controller, sink, opened = make_controller(transport)

        await controller.start()
        await asyncio.sleep(0.15)
        controller.stop()

        assert len(sink.full) == 1
        assert len(sink.patches) >= 2
        assert len(opened) == 1
        assert transport.connects == 1

    asyncio.run(run())


@pytest.mark.parametrize(
    "failure",
    [bytes(BUFFER_SIZE), NotReady("not yet"), TransportError("socket hiccup"), b"short"],
)
def test_transient_failures_keep_polling(make_snapshot, failure: object) -> None:
    async def run() -> None:
        good = encode(make_snapshot())
        transport = FakeTransport([failure, failure, good])
        controller, sink, _ = make_controller(transport)

        await controller.start()
        assert sink.full == []
        assert controller.is_live
        await asyncio.sleep(0.15)
        controller.stop()

        assert len(sink.full) == 1

    asyncio.run(run())


def test_no_session_stops_without_error(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())])
        errors: list[str] = []
        controller, sink, opened = make_controller(transport, session=[None], errors=errors)

        await controller.start()

        assert controller.state is PollState.STOPPED
        assert opened == []
        assert sink.full == []
        assert errors == []

    asyncio.run(run())


def test_session_end_during_polling_stops(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())])
        session: list[GuestSession | None] = [SESSION]
        controller, _, _ = make_controller(transport, session=session)

        await controller.start()
        session[0] = None
        await asyncio.sleep(0.1)

        assert controller.state is PollState.STOPPED
        assert transport.disconnects >= 1

    asyncio.run(run())


def test_resolution_failure_is_raised_and_reported_once(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], requires_address=True)
        errors: list[str] = []
        controller, sink, _ = make_controller(
            transport, resolver=FakeResolver(address=None), errors=errors
        )

        with pytest.raises(ResolutionError):
            await controller.start()
        await asyncio.sleep(0.1)

        assert controller.state is PollState.STOPPED
        assert len(errors) == 1
        assert transport.reads == []
        assert sink.full == []

    asyncio.run(run())


def test_stop_disconnects_and_forgets_address(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], requires_address=True)
        resolver = FakeResolver()
        controller, _, opened = make_controller(transport, resolver=resolver, interval=10)

        await controller.start()
        controller.stop()

        assert transport.disconnects == 1
        assert resolver.clears == 1
        assert controller.transport is None

        await controller.start()
        controller.stop()

        assert resolver.calls == 2
        assert len(opened) == 2

    asyncio.run(run())


def test_reads_never_overlap(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], delay=0.08)
        controller, _, _ = make_controller(transport, interval=0.01)

        await controller.start()
        await asyncio.sleep(0.3)
        controller.stop()

        assert transport.max_active == 1
        assert controller.skipped_ticks > 0

    asyncio.run(run())


def test_restart_replaces_timer(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())])
        controller, _, _ = make_controller(transport, interval=10)

        await controller.start()
        first_timer = controller._timer
        await controller.start()
        await asyncio.sleep(0)

        assert first_timer is not None and first_timer.cancelled()
        assert controller._timer is not first_timer
        controller.stop()

    asyncio.run(run())


def test_read_finishing_after_stop_is_discarded(make_snapshot) -> None:
    async def run() -> None:
        good = encode(make_snapshot())
        transport = FakeTransport([good], delay=0.05)
        controller, sink, _ = make_controller(transport, interval=0.01)

        await controller.start()
        assert len(sink.full) == 1
        await asyncio.sleep(0.02)  # a tick read is now in flight
        controller.stop()
        await asyncio.sleep(0.1)

        assert len(sink.full) == 1
        assert sink.patches == []

    asyncio.run(run())


def test_session_signals_and_live_notifications(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())])
        live: list[bool] = []
        controller, sink, _ = make_controller(transport, interval=10, live=live)

        await controller.session_started()
        assert controller.is_live
        await controller.session_started()
        controller.session_ended()
        await controller.session_started()
        controller.dispose()

        assert live == [True, False, True, False]
        assert len(sink.full) == 1
        assert len(sink.patches) == 1

        with pytest.raises(RuntimeError):
            await controller.start()
        await controller.session_started()
        assert controller.state is PollState.STOPPED

    asyncio.run(run())


def poll_timers() -> list[asyncio.Task[object]]:
    return [t for t in asyncio.all_tasks() if t.get_name() == "memory-poll" and not t.done()]


def test_start_waits_for_tick_read_in_flight(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], delay=0.1)
        controller, sink, _ = make_controller(transport, interval=0.02)

        await controller.start()
        await asyncio.sleep(0.03)  # a tick read is now in flight
        await controller.start()
        controller.stop()

        assert transport.max_active == 1
        assert len(sink.full) == 1

    asyncio.run(run())


def test_concurrent_starts_leave_one_timer(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], delay=0.01)
        controller, _, _ = make_controller(transport, interval=0.02)

        await asyncio.gather(controller.start(), controller.start())

        assert len(poll_timers()) == 1
        assert transport.max_active == 1

        controller.stop()
        await asyncio.sleep(0.01)
        assert poll_timers() == []
        reads = len(transport.reads)
        await asyncio.sleep(0.1)
        assert len(transport.reads) == reads

    asyncio.run(run())


def test_concurrent_starts_report_resolution_failure_once(make_snapshot) -> None:
    async def run() -> None:
        transport = FakeTransport([encode(make_snapshot())], requires_address=True)
        errors: list[str] = []
        controller, _, _ = make_controller(
            transport, resolver=FakeResolver(address=None), errors=errors
        )

        results = await asyncio.gather(
            controller.start(), controller.start(), return_exceptions=True
        )

        assert isinstance(results[0], ResolutionError)
        assert controller.state is PollState.STOPPED
        assert len(errors) == 1
        assert poll_timers() == []

    asyncio.run(run())
