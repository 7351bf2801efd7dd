from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

from .config.loader import load_settings
from .domain.engine import VoteEngine
from .domain.errors import DomainError
from .domain.window import WindowClosed
from .mcp_server import create_server
from .observability.logging import configure_logging, get_logger
from .osc.dispatch import OSCDispatchSink
from .osc.receiver import ChatReceiver
from .osc.transport import OSCTransport


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="crowdplay")

    p.add_argument("--config", type=Path, default=None, help="YAML config path (default: ./config.yaml or ./config/config.yaml)")
    p.add_argument("--controls-file", type=Path, default=None, help="Controls JSON (analog/buttons/aliases/holdDefaultsMs/momentumConfig)")
    p.add_argument("--transport", choices=["stdio", "sse", "http"], default=None)

    p.add_argument("--osc-send-ip", default=None)
    p.add_argument("--osc-send-port", type=int, default=None)

    p.add_argument("--enable-receiver", action="store_true", help="Listen for chat messages over OSC")
    p.add_argument("--no-receiver", action="store_true", help="Do not start the chat receiver")
    p.add_argument("--osc-receive-ip", default=None)
    p.add_argument("--osc-receive-port", type=int, default=None)

    p.add_argument("--sse-host", default=None)
    p.add_argument("--sse-port", type=int, default=None)

    p.add_argument("--http-host", default=None)
    p.add_argument("--http-port", type=int, default=None)
    p.add_argument("--http-path", default=None)

    p.add_argument("--vote-duration-ms", type=int, default=None)
    p.add_argument("--cooldown-ms", type=int, default=None)
    p.add_argument("--arming", choices=["lazy", "immediate"], default=None)
    p.add_argument("--no-dispatch", action="store_true", help="Tally and log winners without sending input")

    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)

    return p


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    o: dict[str, Any] = {}

    if args.transport is not None:
        o.setdefault("mcp", {})["transport"] = args.transport

    if args.sse_host is not None or args.sse_port is not None:
        o.setdefault("mcp", {}).setdefault("sse", {})
        if args.sse_host is not None:
            o["mcp"]["sse"]["host"] = args.sse_host
        if args.sse_port is not None:
            o["mcp"]["sse"]["port"] = args.sse_port

    if args.http_host is not None or args.http_port is not None or args.http_path is not None:
        o.setdefault("mcp", {}).setdefault("http", {})
        if args.http_host is not None:
            o["mcp"]["http"]["host"] = args.http_host
        if args.http_port is not None:
            o["mcp"]["http"]["port"] = args.http_port
        if args.http_path is not None:
            o["mcp"]["http"]["path"] = args.http_path

    if args.osc_send_ip is not None or args.osc_send_port is not None:
        o.setdefault("osc", {}).setdefault("send", {})
        if args.osc_send_ip is not None:
            o["osc"]["send"]["ip"] = args.osc_send_ip
        if args.osc_send_port is not None:
            o["osc"]["send"]["port"] = args.osc_send_port

    # Receiver tri-state: CLI overrides YAML when explicitly specified.
    if args.enable_receiver and args.no_receiver:
        raise SystemExit("--enable-receiver and --no-receiver are mutually exclusive")

    if args.enable_receiver or args.no_receiver or args.osc_receive_ip is not None or args.osc_receive_port is not None:
        o.setdefault("osc", {}).setdefault("receive", {})
        if args.enable_receiver:
            o["osc"]["receive"]["enabled"] = True
        if args.no_receiver:
            o["osc"]["receive"]["enabled"] = False
        if args.osc_receive_ip is not None:
            o["osc"]["receive"]["ip"] = args.osc_receive_ip
        if args.osc_receive_port is not None:
            o["osc"]["receive"]["port"] = args.osc_receive_port

    if args.controls_file is not None:
        o.setdefault("controls", {})["file"] = str(args.controls_file)

    if args.vote_duration_ms is not None:
        o.setdefault("voting", {})["vote_duration_ms"] = args.vote_duration_ms
    if args.cooldown_ms is not None:
        o.setdefault("voting", {})["cooldown_ms"] = args.cooldown_ms
    if args.arming is not None:
        o.setdefault("voting", {})["arming"] = args.arming

    if args.no_dispatch:
        o.setdefault("dispatch", {})["enabled"] = False

    if args.log_level is not None:
        o.setdefault("logging", {})["level"] = args.log_level

    return o


async def _run(settings) -> None:
    configure_logging(level=settings.logging.level, json_logs=settings.logging.json_logs)
    logger = get_logger().bind(component="app")

    osc = OSCTransport(
        send_ip=settings.osc.send.ip,
        send_port=settings.osc.send.port,
        osc_per_second=settings.osc.osc_per_second,
        logger=get_logger().bind(component="osc"),
    )
    await osc.start()

    sink = OSCDispatchSink(
        transport=osc,
        controls=settings.controls,
        dispatch=settings.dispatch,
        logger=get_logger().bind(component="dispatch"),
    )
    engine = VoteEngine(
        settings=settings,
        logger=get_logger().bind(component="voting"),
        dispatch_sink=sink,
    )

    report_logger = get_logger().bind(component="report")

    def _report(event: WindowClosed) -> None:
        # Overlay / leaderboard collectors tail this event.
        report_logger.info(
            "move.executed",
            window_id=event.result.window_id,
            command=event.winner.to_dict(),
            votes=event.result.votes,
            total_votes=event.result.total_votes,
            first_voter=event.first_voter,
            tally=event.tally,
        )

    engine.subscribe(_report, name="report")

    receiver: ChatReceiver | None = None
    if settings.osc.receive.enabled:

        def _on_chat(user: str, text: str, base_weight: float | None) -> None:
            engine.submit_vote(text, user, base_weight)

        def _on_boost(user: str, weight: float, duration_ms: int | None) -> None:
            try:
                engine.grant_boost(user=user, weight=weight, duration_ms=duration_ms)
            except DomainError as e:
                logger.warning("boost.rejected", user=user, weight=weight, error=str(e))

        receiver = ChatReceiver(
            bind_ip=settings.osc.receive.ip,
            port=settings.osc.receive.port,
            logger=get_logger().bind(component="chat"),
            on_chat=_on_chat,
            on_boost=_on_boost,
            chat_address=settings.osc.receive.chat_address,
            boost_address=settings.osc.receive.boost_address,
        )
        await receiver.start()

    await engine.start()
    mcp = create_server(engine=engine)

    logger.info(
        "server.start",
        transport=settings.mcp.transport,
        osc_send_ip=settings.osc.send.ip,
        osc_send_port=settings.osc.send.port,
        receiver_enabled=settings.osc.receive.enabled,
        controls_file=str(settings.controls.file) if settings.controls.file else None,
        sse_host=settings.mcp.sse.host,
        sse_port=settings.mcp.sse.port,
        http_host=settings.mcp.http.host,
        http_port=settings.mcp.http.port,
        http_path=settings.mcp.http.path,
    )

    try:
        if settings.mcp.transport == "stdio":
            await mcp.run_async(transport="stdio")
        elif settings.mcp.transport == "sse":
            await mcp.run_async(transport="sse", host=settings.mcp.sse.host, port=settings.mcp.sse.port)
        else:
            await mcp.run_async(
                transport="http",
                host=settings.mcp.http.host,
                port=settings.mcp.http.port,
                path=settings.mcp.http.path,
            )
    finally:
        try:
            if receiver is not None:
                await receiver.close()
            await engine.stop()
            # Release everything in case a hold was cut short.
            await sink.release_all(trace_id="shutdown")
        finally:
            await osc.close()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    project_root = Path(__file__).resolve().parents[1]
    loaded = load_settings(project_root=project_root, config_path=args.config, cli_overrides=_cli_overrides(args))

    asyncio.run(_run(loaded.settings))
    return 0
