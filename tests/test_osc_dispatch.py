from __future__ import annotations

import asyncio
import socket

import pytest
from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import AsyncIOOSCUDPServer

from crowdplay.config.settings import Settings
from crowdplay.domain.commands import NormalizedCommand, hold, momentum, press
from crowdplay.domain.errors import DomainError
from crowdplay.observability.logging import configure_logging, get_logger
from crowdplay.osc.dispatch import OSCDispatchSink
from crowdplay.osc.transport import OSCTransport


class OscCapture:
    def __init__(self) -> None:
        self.messages: asyncio.Queue[tuple[str, tuple]] = asyncio.Queue()

    def handler(self, address: str, *args):
        self.messages.put_nowait((address, args))


def _free_udp_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


async def _with_sink(fn, *, dispatch: dict | None = None):
    configure_logging(level="ERROR", json_logs=True)

    capture = OscCapture()
    dispatcher = Dispatcher()
    dispatcher.set_default_handler(capture.handler)

    port = _free_udp_port()
    server = AsyncIOOSCUDPServer(("127.0.0.1", port), dispatcher, asyncio.get_running_loop())
    transport, _protocol = await server.create_serve_endpoint()

    osc = None
    try:
        settings = Settings.model_validate(
            {
                "osc": {"send": {"ip": "127.0.0.1", "port": port}, "osc_per_second": 500},
                "dispatch": {"press_ms": 20, **(dispatch or {})},
            }
        )
        osc = OSCTransport(
            send_ip=settings.osc.send.ip,
            send_port=settings.osc.send.port,
            osc_per_second=settings.osc.osc_per_second,
            logger=get_logger().bind(component="test-osc"),
        )
        await osc.start()

        sink = OSCDispatchSink(
            transport=osc,
            controls=settings.controls,
            dispatch=settings.dispatch,
            logger=get_logger().bind(component="test-dispatch"),
        )
        await fn(sink, capture)
    finally:
        if osc is not None:
            await osc.close()
        transport.close()


@pytest.mark.asyncio
async def test_press_sends_1_then_0():
    async def _run(sink, capture):
        out = await sink.execute(press("a"), trace_id="t")

        a1, args1 = await asyncio.wait_for(capture.messages.get(), timeout=1)
        a2, args2 = await asyncio.wait_for(capture.messages.get(), timeout=1)

        assert a1 == "/input/X"
        assert args1 == (1,)
        assert a2 == "/input/X"
        assert args2 == (0,)
        assert out["dispatched"] is True
        assert out["duration_ms"] == 20

    await _with_sink(_run)


@pytest.mark.asyncio
async def test_hold_keeps_input_down_for_duration():
    async def _run(sink, capture):
        out = await sink.execute(hold("b", 150), trace_id="t")

        assert out["osc_address"] == "/input/Z"
        assert out["duration_ms"] == 150
        assert out["elapsed_ms"] >= 140

        assert await asyncio.wait_for(capture.messages.get(), timeout=1) == ("/input/Z", (1,))
        assert await asyncio.wait_for(capture.messages.get(), timeout=1) == ("/input/Z", (0,))

    await _with_sink(_run)


@pytest.mark.asyncio
async def test_momentum_uses_derived_duration():
    async def _run(sink, capture):
        out = await sink.execute(momentum("left", 50, 200), trace_id="t")
        assert out["osc_address"] == "/input/LEFT"
        assert out["duration_ms"] == 200

    await _with_sink(_run)


@pytest.mark.asyncio
async def test_release_all_zeroes_every_mapped_input():
    async def _run(sink, capture):
        out = await sink.execute(NormalizedCommand(kind="release_all"), trace_id="t")

        expected = sorted(
            f"/input/{m}" for m in ("UP", "DOWN", "LEFT", "RIGHT", "X", "Z", "A", "S", "ENTER", "BACKSPACE")
        )
        assert out["released"] == expected

        got = []
        for _ in expected:
            got.append(await asyncio.wait_for(capture.messages.get(), timeout=1))
        assert [a for a, _ in got] == expected
        assert all(args == (0,) for _, args in got)

    await _with_sink(_run)


@pytest.mark.asyncio
async def test_disabled_dispatch_sends_nothing():
    async def _run(sink, capture):
        out = await sink.execute(press("a"), trace_id="t")
        assert out["dispatched"] is False
        await asyncio.sleep(0.05)
        assert capture.messages.empty()

    await _with_sink(_run, dispatch={"enabled": False})


@pytest.mark.asyncio
async def test_invalid_and_unmapped_commands_are_refused():
    async def _run(sink, capture):
        with pytest.raises(DomainError):
            await sink.execute(NormalizedCommand(kind="invalid"), trace_id="t")
        with pytest.raises(DomainError):
            await sink.execute(press("turbo"), trace_id="t")
        await asyncio.sleep(0.05)
        assert capture.messages.empty()

    await _with_sink(_run)


@pytest.mark.asyncio
async def test_transport_keeps_order_and_counts_sends():
    configure_logging(level="ERROR", json_logs=True)

    capture = OscCapture()
    dispatcher = Dispatcher()
    dispatcher.set_default_handler(capture.handler)

    port = _free_udp_port()
    server = AsyncIOOSCUDPServer(("127.0.0.1", port), dispatcher, asyncio.get_running_loop())
    transport, _protocol = await server.create_serve_endpoint()

    osc = OSCTransport(send_ip="127.0.0.1", send_port=port, osc_per_second=200, logger=get_logger().bind(component="test-osc"))
    await osc.start()
    try:
        n = await osc.send_many([("/input/X", 1), ("/input/X", 0), ("/input/Z", 1), ("/input/Z", 0)], trace_id="t")
        assert n == 4
        assert await osc.flush(timeout_s=1) is True

        got = [await asyncio.wait_for(capture.messages.get(), timeout=1) for _ in range(4)]
        assert got == [("/input/X", (1,)), ("/input/X", (0,)), ("/input/Z", (1,)), ("/input/Z", (0,))]

        stats = osc.stats()
        assert stats["sent"] == 4
        assert stats["failed"] == 0
        assert stats["queue_depth"] == 0
        assert stats["last_sent_ms_ago"] is not None
    finally:
        await osc.close()
        transport.close()
