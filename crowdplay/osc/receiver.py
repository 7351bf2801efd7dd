from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import AsyncIOOSCUDPServer


ChatCallback = Callable[[str, str, float | None], Awaitable[None] | None]
BoostCallback = Callable[[str, float, int | None], Awaitable[None] | None]


def _as_text(v: Any) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return str(v)


def _as_number(v: Any) -> float | None:
    """Finite int/float argument, else None (OSC floats can carry inf/nan)."""
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        return None
    return float(v)


class ChatReceiver:
    """OSC UDP inbound chat transport.

    A chat relay (whatever scrapes the stream chat) forwards:
    - `<chat_address> user text [base_weight]`
    - `<boost_address> user weight [duration_ms]`

    Malformed packets are logged and dropped; they never reach the engine.
    """

    def __init__(
        self,
        *,
        bind_ip: str,
        port: int,
        logger,
        on_chat: ChatCallback,
        on_boost: BoostCallback | None = None,
        chat_address: str = "/chat/message",
        boost_address: str = "/chat/boost",
    ) -> None:
        self._bind_ip = bind_ip
        self._port = int(port)
        self._logger = logger
        self._on_chat = on_chat
        self._on_boost = on_boost

        self._dispatcher = Dispatcher()
        self._server: AsyncIOOSCUDPServer | None = None
        self._transport = None
        self._protocol = None

        self._dispatcher.map(chat_address, self._handle_chat)
        self._dispatcher.map(boost_address, self._handle_boost)
        self._dispatcher.set_default_handler(self._handle_default)

    @property
    def bind_ip(self) -> str:
        return self._bind_ip

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        if self._transport is not None:
            return

        loop = asyncio.get_running_loop()
        # python-osc's type stubs expect BaseEventLoop; get_running_loop returns AbstractEventLoop.
        self._server = AsyncIOOSCUDPServer((self._bind_ip, self._port), self._dispatcher, loop)  # type: ignore[arg-type]
        self._transport, self._protocol = await self._server.create_serve_endpoint()

        self._logger.info("osc.receiver.start", bind_ip=self._bind_ip, bind_port=self._port)

    async def close(self) -> None:
        if self._transport is None:
            return

        try:
            self._logger.info("osc.receiver.stop", bind_ip=self._bind_ip, bind_port=self._port)
        finally:
            self._transport.close()
            self._transport = None
            self._protocol = None
            self._server = None

    # -----------------
    # OSC handlers
    # -----------------

    def _handle_chat(self, address: str, *args: Any) -> None:
        if len(args) < 2:
            self._logger.warning("osc.recv.malformed", osc_address=address, arg_count=len(args))
            return

        user = _as_text(args[0]).strip()
        text = _as_text(args[1])
        base_weight = _as_number(args[2]) if len(args) > 2 else None
        if not user:
            self._logger.warning("osc.recv.malformed", osc_address=address, reason="empty_user")
            return
        if len(args) > 2 and base_weight is None:
            self._logger.warning("osc.recv.malformed", osc_address=address, reason="bad_base_weight")
            return

        self._call_cb(self._on_chat, user, text, base_weight)

    def _handle_boost(self, address: str, *args: Any) -> None:
        if self._on_boost is None:
            return
        user = _as_text(args[0]).strip() if args else ""
        weight = _as_number(args[1]) if len(args) > 1 else None
        duration = _as_number(args[2]) if len(args) > 2 else None
        if not user or weight is None or (len(args) > 2 and duration is None):
            self._logger.warning("osc.recv.malformed", osc_address=address, arg_count=len(args))
            return

        self._call_cb(self._on_boost, user, weight, int(duration) if duration is not None else None)

    def _handle_default(self, address: str, *args: Any) -> None:
        self._logger.debug("osc.recv.ignored", osc_address=address)

    def _call_cb(self, cb: Callable[..., Awaitable[None] | None], *args: Any) -> None:
        try:
            r = cb(*args)
            if asyncio.iscoroutine(r):
                asyncio.create_task(r)  # fire-and-forget
        except Exception as e:  # noqa: BLE001
            # Never crash the OSC server on callback errors.
            self._logger.exception("osc.recv.callback_failed", error=str(e))
